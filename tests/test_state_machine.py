"""Tests for task status transitions (workflow/state_machine.py)."""

from __future__ import annotations

import itertools

import pytest

from mission_control.errors import InvalidTransitionError
from mission_control.workflow.model import Task, TaskStatus
from mission_control.workflow.state_machine import (
    allowed_targets,
    apply_transition,
    describe_state_machine,
    is_transition_allowed,
)

S = TaskStatus

ALLOWED = {
    (S.BACKLOG, S.READY),
    (S.BACKLOG, S.BLOCKED),
    (S.READY, S.IN_PROGRESS),
    (S.READY, S.BACKLOG),
    (S.READY, S.BLOCKED),
    (S.IN_PROGRESS, S.REVIEW),
    (S.IN_PROGRESS, S.BLOCKED),
    (S.IN_PROGRESS, S.DONE),
    (S.IN_PROGRESS, S.READY),
    (S.REVIEW, S.DONE),
    (S.REVIEW, S.IN_PROGRESS),
    (S.REVIEW, S.BLOCKED),
    (S.BLOCKED, S.READY),
    (S.BLOCKED, S.BACKLOG),
}


@pytest.mark.parametrize("from_status,to_status", list(itertools.product(S, S)))
def test_transition_table(from_status: TaskStatus, to_status: TaskStatus) -> None:
    assert is_transition_allowed(from_status, to_status) == ((from_status, to_status) in ALLOWED)


def test_done_is_terminal() -> None:
    assert allowed_targets(S.DONE) == []
    assert describe_state_machine()["terminal"] == ["done"]


def test_apply_sets_started_once() -> None:
    task = Task(title="Loop", status=S.READY)
    apply_transition(task, S.IN_PROGRESS, now="2024-01-01T00:00:00+00:00")
    apply_transition(task, S.READY, now="2024-01-02T00:00:00+00:00")
    apply_transition(task, S.IN_PROGRESS, now="2024-01-03T00:00:00+00:00")
    assert task.started_at == "2024-01-01T00:00:00+00:00"
    assert task.updated_at == "2024-01-03T00:00:00+00:00"


def test_apply_stamps_completion() -> None:
    task = Task(title="Finish", status=S.REVIEW)
    old = apply_transition(task, S.DONE, now="2024-01-01T00:00:00+00:00")
    assert old == S.REVIEW
    assert task.completed_at == "2024-01-01T00:00:00+00:00"


def test_rejected_transition_leaves_task_untouched() -> None:
    task = Task(title="Stay", status=S.BACKLOG)
    before = task.to_dict()
    with pytest.raises(InvalidTransitionError) as exc_info:
        apply_transition(task, S.DONE)
    assert task.to_dict() == before
    err = exc_info.value
    assert err.status_code == 409
    assert err.to_dict()["context"]["allowed"] == ["ready", "blocked"]


def test_self_transition_rejected() -> None:
    task = Task(title="Same", status=S.READY)
    with pytest.raises(InvalidTransitionError):
        apply_transition(task, S.READY)
