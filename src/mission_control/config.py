"""Load optional workflow configuration from `.mission_control/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_MIGRATION_BATCH_SIZE,
    DEFAULT_PREVIEW_CHARS,
    DEFAULT_RATE_LIMITS,
    DEFAULT_STALE_AGENT_SECONDS,
    DEFAULT_TICKET_PREFIX,
    DEFAULT_WORKLOAD_PENALTY,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class RateLimitRule:
    max_calls: int
    window_ms: int


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {op: RateLimitRule(calls, window) for op, (calls, window) in DEFAULT_RATE_LIMITS.items()}


@dataclass
class WorkflowConfig:
    """Typed view over the config file; every field has a usable default."""

    ticket_prefix: str = DEFAULT_TICKET_PREFIX
    rate_limits: dict[str, RateLimitRule] = field(default_factory=_default_rate_limits)
    workload_penalty: float = DEFAULT_WORKLOAD_PENALTY
    role_keywords: dict[str, list[str]] = field(default_factory=dict)
    migration_batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE
    preview_chars: int = DEFAULT_PREVIEW_CHARS
    notification_ttl_seconds: Optional[int] = None
    stale_agent_seconds: int = DEFAULT_STALE_AGENT_SECONDS

    def rate_limit_for(self, operation: str) -> Optional[RateLimitRule]:
        return self.rate_limits.get(operation)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowConfig":
        config = cls()

        prefix = data.get("ticket_prefix")
        if isinstance(prefix, str) and prefix.strip():
            config.ticket_prefix = prefix.strip()

        limits = _get_nested(data, "rate_limits")
        if isinstance(limits, dict):
            for operation, raw in limits.items():
                if not isinstance(raw, dict):
                    continue
                try:
                    config.rate_limits[str(operation)] = RateLimitRule(
                        max_calls=int(raw["max_calls"]),
                        window_ms=int(raw["window_ms"]),
                    )
                except (KeyError, TypeError, ValueError):
                    continue

        penalty = _get_nested(data, "assignment", "workload_penalty")
        if isinstance(penalty, (int, float)) and penalty >= 0:
            config.workload_penalty = float(penalty)

        keywords = _get_nested(data, "assignment", "role_keywords")
        if isinstance(keywords, dict):
            config.role_keywords = {
                str(role).lower(): [str(k) for k in words]
                for role, words in keywords.items()
                if isinstance(words, list)
            }

        batch = _get_nested(data, "migrations", "batch_size")
        if isinstance(batch, int) and batch > 0:
            config.migration_batch_size = batch

        preview = _get_nested(data, "notifications", "preview_chars")
        if isinstance(preview, int) and preview > 0:
            config.preview_chars = preview

        ttl = _get_nested(data, "notifications", "ttl_seconds")
        if isinstance(ttl, int) and ttl > 0:
            config.notification_ttl_seconds = ttl

        stale = _get_nested(data, "sweeps", "stale_agent_seconds")
        if isinstance(stale, int) and stale > 0:
            config.stale_agent_seconds = stale

        return config


def load_workflow_config(project_dir: Path) -> tuple[WorkflowConfig, str | None]:
    """Load the optional workflow config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. A missing file yields defaults and
        no error; an unreadable file yields defaults and the parse error.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return WorkflowConfig(), err
    return WorkflowConfig.from_dict(data), None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur
