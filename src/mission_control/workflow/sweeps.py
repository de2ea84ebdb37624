"""Periodic maintenance passes, invoked by an external timer (cron, CLI).

Each sweep runs in its own transaction, re-reads current state, and keeps
going past a failing item so one bad record cannot stall the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_STALE_AGENT_SECONDS
from ..utils import _iso_from_ms, _now_ms, _parse_iso
from .model import AgentStatus
from .store import WorkflowTx


@dataclass
class SweepReport:
    name: str
    checked: int = 0
    affected: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "checked": self.checked,
            "affected": self.affected,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def sweep_expired_notifications(tx: WorkflowTx, now_ms: Optional[int] = None) -> SweepReport:
    """Delete notifications whose ``expires_at`` lies in the past."""
    now = _now_ms() if now_ms is None else now_ms
    cutoff = _parse_iso(_iso_from_ms(now))
    report = SweepReport(name="expired_notifications")
    for notification in tx.notifications.all():
        if not notification.expires_at:
            continue
        report.checked += 1
        try:
            expires = _parse_iso(notification.expires_at)
            if expires is None:
                raise ValueError(f"unparseable expires_at {notification.expires_at!r}")
            if cutoff is not None and expires <= cutoff:
                tx.notifications.remove(notification.id)
                report.affected += 1
        except Exception as exc:
            report.failed += 1
            report.errors.append(f"{notification.id}: {exc}")
            logger.warning("Notification sweep skipped {}: {}", notification.id, exc)
    if report.affected:
        logger.info("Removed {} expired notification(s)", report.affected)
    return report


def sweep_stale_agents(
    tx: WorkflowTx,
    now_ms: Optional[int] = None,
    stale_after_seconds: int = DEFAULT_STALE_AGENT_SECONDS,
) -> SweepReport:
    """Mark agents offline when their last heartbeat is older than the threshold."""
    now = _now_ms() if now_ms is None else now_ms
    threshold = stale_after_seconds * 1000
    report = SweepReport(name="stale_agents")
    for agent in tx.agents.all():
        if agent.status == AgentStatus.OFFLINE:
            continue
        report.checked += 1
        try:
            if agent.last_heartbeat is None or now - int(agent.last_heartbeat) > threshold:
                agent.status = AgentStatus.OFFLINE
                report.affected += 1
                logger.info("Agent {} ({}) marked offline", agent.name, agent.id)
        except Exception as exc:
            report.failed += 1
            report.errors.append(f"{agent.id}: {exc}")
            logger.warning("Agent sweep skipped {}: {}", agent.id, exc)
    return report
