"""Keep epic membership and progress in step with the tasks that point at them."""

from __future__ import annotations

import logging
from typing import Optional

from ..utils import _now_iso
from .actors import SYSTEM, Actor
from .fanout import log_activity
from .model import ActivityType, Epic, EpicStatus, TaskStatus
from .store import WorkflowTx

logger = logging.getLogger(__name__)


def compute_progress(done: int, total: int) -> int:
    """Percentage of done tasks, rounded half-up; an empty epic is at 0."""
    if total <= 0:
        return 0
    return (done * 200 + total) // (2 * total)


def sync_epic_task_link(
    tx: WorkflowTx,
    task_id: str,
    old_epic_id: Optional[str],
    new_epic_id: Optional[str],
) -> None:
    """Move *task_id* between the ``task_ids`` lists of two epics.

    Idempotent: missing epics are skipped and nothing is appended twice.
    """
    if old_epic_id and old_epic_id != new_epic_id:
        old = tx.epics.get(old_epic_id)
        if old is not None and task_id in old.task_ids:
            old.task_ids.remove(task_id)
            old.touch()
    if new_epic_id:
        new = tx.epics.get(new_epic_id)
        if new is not None and task_id not in new.task_ids:
            new.task_ids.append(task_id)
            new.touch()


def recalculate_progress(tx: WorkflowTx, epic_id: Optional[str], actor: Actor = SYSTEM) -> Optional[Epic]:
    """Recompute ``progress`` from member task statuses.

    The first time progress reaches 100 the epic is stamped ``completed_at``
    and moved to ``completed``; later recomputes never clear that stamp.
    """
    if not epic_id:
        return None
    epic = tx.epics.get(epic_id)
    if epic is None:
        return None
    members = tx.tasks.filter(lambda t: t.epic_id == epic_id)
    done = sum(1 for t in members if t.status == TaskStatus.DONE)
    progress = compute_progress(done, len(members))
    if progress != epic.progress:
        epic.progress = progress
        epic.touch()
    if progress == 100 and not epic.completed_at:
        epic.completed_at = _now_iso()
        epic.status = EpicStatus.COMPLETED
        epic.touch()
        log_activity(tx, ActivityType.EPIC_COMPLETED, actor, f"Epic completed: {epic.title}", epic=epic)
        logger.info("Epic %s reached 100%% progress", epic.id)
    return epic


def rebuild_membership(tx: WorkflowTx, epic_id: str) -> Optional[Epic]:
    """Reset ``task_ids`` to exactly the tasks whose ``epic_id`` matches."""
    epic = tx.epics.get(epic_id)
    if epic is None:
        return None
    members = [t.id for t in tx.tasks.all() if t.epic_id == epic_id]
    if members != epic.task_ids:
        epic.task_ids = members
        epic.touch()
    return epic
