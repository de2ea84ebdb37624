"""Task status state machine."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..errors import InvalidTransitionError
from ..utils import _now_iso
from .model import Task, TaskStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.BACKLOG: (TaskStatus.READY, TaskStatus.BLOCKED),
    TaskStatus.READY: (TaskStatus.IN_PROGRESS, TaskStatus.BACKLOG, TaskStatus.BLOCKED),
    TaskStatus.IN_PROGRESS: (TaskStatus.REVIEW, TaskStatus.BLOCKED, TaskStatus.DONE, TaskStatus.READY),
    TaskStatus.REVIEW: (TaskStatus.DONE, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
    TaskStatus.BLOCKED: (TaskStatus.READY, TaskStatus.BACKLOG),
    TaskStatus.DONE: (),  # terminal
}


def allowed_targets(status: TaskStatus) -> list[TaskStatus]:
    return list(_VALID_TRANSITIONS.get(status, ()))


def is_transition_allowed(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Self-transitions are never allowed."""
    if from_status == to_status:
        return False
    return to_status in _VALID_TRANSITIONS.get(from_status, ())


def apply_transition(task: Task, new_status: TaskStatus, now: Optional[str] = None) -> TaskStatus:
    """Move *task* to *new_status*, returning the previous status.

    Raises :class:`InvalidTransitionError` and leaves the task untouched when
    the pair is not in the transition table.
    """
    old = task.status
    if not is_transition_allowed(old, new_status):
        raise InvalidTransitionError(
            task.id,
            old.value,
            new_status.value,
            [s.value for s in allowed_targets(old)],
        )
    ts = now or _now_iso()
    task.status = new_status
    task.updated_at = ts
    if new_status == TaskStatus.IN_PROGRESS and task.started_at is None:
        task.started_at = ts
    if new_status == TaskStatus.DONE:
        task.completed_at = ts
    logger.debug("Task %s: %s -> %s", task.id, old.value, new_status.value)
    return old


def describe_state_machine() -> dict[str, Any]:
    return {
        "states": [s.value for s in TaskStatus],
        "terminal": [s.value for s, targets in _VALID_TRANSITIONS.items() if not targets],
        "transitions": {s.value: [t.value for t in targets] for s, targets in _VALID_TRANSITIONS.items()},
    }
