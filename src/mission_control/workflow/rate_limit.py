"""Fixed-window rate limiting over the settings collection.

A window is stored under ``ratelimit:<operation>:<actor key>`` as
``{"count": int, "window_start": epoch_ms}``.  Callers run these helpers inside
a store transaction, so the read-compare-write is serialized by the store's
exclusive lock and two callers can never both take the last slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import RateLimitExceededError
from ..utils import _now_ms
from .store import WorkflowTx

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "remaining": self.remaining, "reset_at": self.reset_at}


def rate_limit_key(operation: str, actor_key: str) -> str:
    return f"{KEY_PREFIX}{operation}:{actor_key}"


def check_rate_limit(
    tx: WorkflowTx,
    key: str,
    max_calls: int,
    window_ms: int,
    now_ms: Optional[int] = None,
) -> RateLimitDecision:
    """Count one call against *key* and report whether it is allowed."""
    now = _now_ms() if now_ms is None else now_ms
    state = tx.get_setting(key)

    if not isinstance(state, dict):
        tx.set_setting(key, {"count": 1, "window_start": now})
        return RateLimitDecision(True, max_calls - 1, now + window_ms)

    count = int(state.get("count", 0))
    window_start = int(state.get("window_start", now))

    if now - window_start > window_ms:
        tx.set_setting(key, {"count": 1, "window_start": now})
        return RateLimitDecision(True, max_calls - 1, now + window_ms)

    reset_at = window_start + window_ms
    if count >= max_calls:
        return RateLimitDecision(False, 0, reset_at)

    tx.set_setting(key, {"count": count + 1, "window_start": window_start})
    return RateLimitDecision(True, max_calls - (count + 1), reset_at)


def enforce_rate_limit(
    tx: WorkflowTx,
    key: str,
    max_calls: int,
    window_ms: int,
    now_ms: Optional[int] = None,
) -> RateLimitDecision:
    """Like :func:`check_rate_limit`, but raise :class:`RateLimitExceededError` on denial."""
    decision = check_rate_limit(tx, key, max_calls, window_ms, now_ms)
    if not decision.allowed:
        logger.info("Rate limit hit for %s (%d per %dms)", key, max_calls, window_ms)
        raise RateLimitExceededError(key, max_calls, window_ms, decision.reset_at)
    return decision


def check_rate_limit_silent(
    tx: WorkflowTx,
    key: str,
    max_calls: int,
    window_ms: int,
    now_ms: Optional[int] = None,
) -> bool:
    return check_rate_limit(tx, key, max_calls, window_ms, now_ms).allowed


def get_rate_limit_status(
    tx: WorkflowTx,
    key: str,
    max_calls: int,
    window_ms: int,
    now_ms: Optional[int] = None,
) -> RateLimitDecision:
    """Report the window for *key* without counting a call."""
    now = _now_ms() if now_ms is None else now_ms
    state = tx.get_setting(key)
    if not isinstance(state, dict):
        return RateLimitDecision(True, max_calls, now + window_ms)
    count = int(state.get("count", 0))
    window_start = int(state.get("window_start", now))
    if now - window_start > window_ms:
        return RateLimitDecision(True, max_calls, now + window_ms)
    return RateLimitDecision(count < max_calls, max(0, max_calls - count), window_start + window_ms)


def clear_rate_limit(tx: WorkflowTx, key: str) -> bool:
    return tx.delete_setting(key)
