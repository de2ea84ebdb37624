"""Tests for the workflow engine (workflow/engine.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from mission_control.config import RateLimitRule, WorkflowConfig
from mission_control.errors import (
    CircularDependencyError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitExceededError,
    UnauthorizedError,
    ValidationError,
)
from mission_control.workflow.actors import SYSTEM, AgentActor, UserActor
from mission_control.workflow.engine import WorkflowEngine, infer_tags
from mission_control.workflow.model import (
    ActivityType,
    AgentStatus,
    EpicStatus,
    NotificationType,
    TaskStatus,
)


class _Clock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".mission_control"
    d.mkdir()
    return d


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def engine(state_dir: Path, clock: _Clock) -> WorkflowEngine:
    return WorkflowEngine(state_dir, clock=clock)


def _finish(engine: WorkflowEngine, task_id: str) -> None:
    for status in ("ready", "in_progress", "done"):
        engine.update_status(task_id, status)


def _assert_edges_mutual(engine: WorkflowEngine) -> None:
    tasks = {t.id: t for t in engine.list_tasks()}
    for task in tasks.values():
        for blocker_id in task.blocked_by:
            assert task.id in tasks[blocker_id].blocks
        for dependent_id in task.blocks:
            assert task.id in tasks[dependent_id].blocked_by


def _assert_epic_membership(engine: WorkflowEngine) -> None:
    tasks = engine.list_tasks()
    for epic in engine.list_epics():
        assert set(epic.task_ids) == {t.id for t in tasks if t.epic_id == epic.id}


# ---------------------------------------------------------------------------
# Task creation
# ---------------------------------------------------------------------------

class TestCreateTask:
    def test_new_task_starts_in_backlog_with_epic_at_zero(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        task = engine.create_task("biz", "Task A", epic_id=epic.id)

        assert task.status == TaskStatus.BACKLOG
        assert task.ticket_number == "TASK-001"
        epic = engine.get_epic(epic.id)
        assert epic.progress == 0
        assert epic.task_ids == [task.id]

    def test_ticket_numbers_are_per_business(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "One")
        b = engine.create_task("biz", "Two")
        c = engine.create_task("other", "Three")
        assert (a.ticket_number, b.ticket_number, c.ticket_number) == ("TASK-001", "TASK-002", "TASK-001")

    def test_ticket_numbers_never_reused_after_delete(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "One")
        engine.delete_task(a.id)
        b = engine.create_task("biz", "Two")
        assert b.ticket_number == "TASK-002"

    def test_custom_ticket_prefix(self, engine: WorkflowEngine) -> None:
        engine.set_ticket_prefix("ops", "OPS")
        assert engine.create_task("ops", "Rotate keys").ticket_number == "OPS-001"

    def test_agent_creator_becomes_assignee(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Write handler", created_by=AgentActor(agent.id))

        assert task.assignee_ids == [agent.id]
        assert engine.get_agent(agent.id).metrics["tasks_created"] == 1
        subs = engine.list_subscriptions(task.id)
        assert [s.actor.key for s in subs] == [f"agent:{agent.id}"]

    def test_tags_inferred_when_missing(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Fix login crash")
        assert task.tags == ["bug", "auth"]

    def test_explicit_tags_kept(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Fix login crash", tags=["urgent", "urgent", " "])
        assert task.tags == ["urgent"]

    def test_empty_title_rejected(self, engine: WorkflowEngine) -> None:
        with pytest.raises(ValidationError) as exc_info:
            engine.create_task("biz", "   ")
        assert exc_info.value.errors
        assert engine.list_tasks() == []

    def test_overlong_title_rejected(self, engine: WorkflowEngine) -> None:
        with pytest.raises(ValidationError):
            engine.create_task("biz", "x" * 201)

    def test_unknown_epic_rejected(self, engine: WorkflowEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.create_task("biz", "Orphan", epic_id="epic-missing")
        assert engine.list_tasks() == []

    def test_unknown_assignee_rejected(self, engine: WorkflowEngine) -> None:
        with pytest.raises(NotFoundError, match="Agent"):
            engine.create_task("biz", "Nobody", assignee_ids=["agent-missing"])

    def test_created_activity_logged(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Audit")
        activities = engine.list_activities(task_id=task.id)
        assert [a.type for a in activities] == [ActivityType.TASK_CREATED]
        assert activities[0].message == "Created task: Audit"
        assert activities[0].ticket_number == "TASK-001"

    def test_subtask_inherits_parent(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        parent = engine.create_task("biz", "Parent", epic_id=epic.id)
        child = engine.create_subtask(parent.id, "Child")

        assert child.parent_id == parent.id
        assert child.business_id == "biz"
        assert child.epic_id == epic.id
        assert engine.get_task(parent.id).subtask_ids == [child.id]
        _assert_epic_membership(engine)

    def test_infer_tags_caps_at_five(self) -> None:
        text = "api ui bug auth database test doc perf"
        assert len(infer_tags(text, "")) == 5


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestUpdateStatus:
    def test_valid_path_sets_timestamps(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Ship")
        engine.update_status(task.id, "ready")
        started = engine.update_status(task.id, "in_progress")
        assert started.started_at is not None
        done = engine.update_status(task.id, "done")
        assert done.status == TaskStatus.DONE
        assert done.completed_at is not None

    def test_invalid_transition_leaves_task_untouched(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Ship")
        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.update_status(task.id, "done")
        assert exc_info.value.allowed == ["ready", "blocked"]
        assert engine.get_task(task.id).status == TaskStatus.BACKLOG

    def test_unknown_status_is_validation_error(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Ship")
        with pytest.raises(ValidationError):
            engine.update_status(task.id, "archived")

    def test_missing_task(self, engine: WorkflowEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.update_status("task-missing", "ready")

    def test_completion_activity_and_metrics(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Ship", assignee_ids=[agent.id])
        engine.update_status(task.id, "ready")
        engine.update_status(task.id, "in_progress")
        assert engine.get_agent(agent.id).status == AgentStatus.ACTIVE
        assert engine.get_agent(agent.id).current_task_id == task.id

        engine.update_status(task.id, "done")
        agent = engine.get_agent(agent.id)
        assert agent.metrics["tasks_completed"] == 1
        assert agent.status == AgentStatus.IDLE
        assert agent.current_task_id is None
        latest = engine.list_activities(task_id=task.id)[0]
        assert latest.type == ActivityType.TASK_COMPLETED
        assert latest.message == 'Task "Ship" completed'
        assert (latest.old_value, latest.new_value) == ("in_progress", "done")

    def test_update_task_routes_status_through_state_machine(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Ship")
        with pytest.raises(InvalidTransitionError):
            engine.update_task(task.id, {"status": "review"})
        updated = engine.update_task(task.id, {"status": "ready", "title": "Ship it"})
        assert updated.status == TaskStatus.READY
        assert updated.title == "Ship it"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class TestDependencies:
    def test_blocker_in_progress_blocks_task(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "Task A")
        b = engine.create_task("biz", "Task B")
        engine.update_status(b.id, "ready")
        engine.update_status(b.id, "in_progress")

        a = engine.add_dependency(a.id, b.id)

        assert a.status == TaskStatus.BLOCKED
        assert a.blocked_by == [b.id]
        assert engine.get_task(b.id).blocks == [a.id]
        auto = [x for x in engine.list_activities(task_id=a.id) if "automatically blocked" in x.message]
        assert len(auto) == 1
        assert auto[0].type == ActivityType.TASK_BLOCKED
        _assert_edges_mutual(engine)

    def test_reverse_edge_rejected_without_mutation(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "Task A")
        b = engine.create_task("biz", "Task B")
        engine.add_dependency(a.id, b.id)

        with pytest.raises(CircularDependencyError):
            engine.add_dependency(b.id, a.id)

        assert engine.get_task(a.id).blocked_by == [b.id]
        assert engine.get_task(b.id).blocked_by == []
        _assert_edges_mutual(engine)

    def test_longer_cycle_rejected(self, engine: WorkflowEngine) -> None:
        a, b, c = (engine.create_task("biz", name) for name in ("A", "B", "C"))
        engine.add_dependency(a.id, b.id)
        engine.add_dependency(b.id, c.id)
        with pytest.raises(CircularDependencyError):
            engine.add_dependency(c.id, a.id)

    def test_self_dependency_rejected(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "A")
        with pytest.raises(ValidationError, match="cannot block itself"):
            engine.add_dependency(a.id, a.id)

    def test_done_blocker_does_not_block(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "A")
        b = engine.create_task("biz", "B")
        _finish(engine, b.id)
        assert engine.add_dependency(a.id, b.id).status == TaskStatus.BACKLOG

    def test_duplicate_edge_is_noop(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "A")
        b = engine.create_task("biz", "B")
        engine.add_dependency(a.id, b.id)
        engine.add_dependency(a.id, b.id)
        assert engine.get_task(a.id).blocked_by == [b.id]
        added = [x for x in engine.list_activities(task_id=a.id) if x.type == ActivityType.DEPENDENCY_ADDED]
        assert len(added) == 1

    def test_finishing_blocker_does_not_unblock(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "A")
        b = engine.create_task("biz", "B")
        engine.add_dependency(a.id, b.id)
        _finish(engine, b.id)
        assert engine.get_task(a.id).status == TaskStatus.BLOCKED

    def test_removing_last_active_blocker_unblocks_and_notifies(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        bob = engine.register_agent("Bob", "frontend")
        a = engine.create_task("biz", "Task A", assignee_ids=[ada.id, bob.id])
        b = engine.create_task("biz", "Task B")
        engine.update_status(b.id, "ready")
        engine.update_status(b.id, "in_progress")
        engine.add_dependency(a.id, b.id)
        engine.update_status(b.id, "done")

        a = engine.remove_dependency(a.id, b.id)

        assert a.status == TaskStatus.READY
        assert a.blocked_by == []
        for agent in (ada, bob):
            unblocked = [
                n
                for n in engine.list_notifications(AgentActor(agent.id))
                if n.type == NotificationType.DEPENDENCY_UNBLOCKED
            ]
            assert len(unblocked) == 1
            assert unblocked[0].content == 'Task "Task A" is now unblocked and ready to work on'
        _assert_edges_mutual(engine)

    def test_remaining_active_blocker_keeps_task_blocked(self, engine: WorkflowEngine) -> None:
        a = engine.create_task("biz", "A")
        b = engine.create_task("biz", "B")
        c = engine.create_task("biz", "C")
        engine.add_dependency(a.id, b.id)
        engine.add_dependency(a.id, c.id)
        assert engine.remove_dependency(a.id, b.id).status == TaskStatus.BLOCKED

    def test_graph_queries(self, engine: WorkflowEngine) -> None:
        a, b, c, d = (engine.create_task("biz", name) for name in ("A", "B", "C", "D"))
        engine.add_dependency(a.id, b.id)
        engine.add_dependency(b.id, c.id)
        engine.add_dependency(a.id, d.id)

        assert set(engine.get_transitive_dependencies(a.id)) == {b.id, c.id, d.id}
        assert set(engine.get_transitive_dependents(c.id)) == {a.id, b.id}
        assert engine.get_critical_path(a.id) == [a.id, b.id, c.id]
        batches = engine.get_execution_order()
        assert batches[-1] == [a.id]
        with pytest.raises(NotFoundError):
            engine.get_critical_path("task-missing")


# ---------------------------------------------------------------------------
# Epics
# ---------------------------------------------------------------------------

class TestEpicProgress:
    def test_progress_and_completion_stamp(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        tasks = [engine.create_task("biz", f"T{i}", epic_id=epic.id) for i in range(4)]

        _finish(engine, tasks[0].id)
        _finish(engine, tasks[1].id)
        assert engine.get_epic(epic.id).progress == 50

        _finish(engine, tasks[2].id)
        _finish(engine, tasks[3].id)
        epic = engine.get_epic(epic.id)
        assert epic.progress == 100
        assert epic.status == EpicStatus.COMPLETED
        stamp = epic.completed_at
        assert stamp is not None

        again = engine.recalculate_epic_progress(epic.id)
        assert again.completed_at == stamp
        completed = [a for a in engine.list_activities(limit=None) if a.type == ActivityType.EPIC_COMPLETED]
        assert len(completed) == 1

    def test_moving_task_between_epics(self, engine: WorkflowEngine) -> None:
        first = engine.create_epic("biz", "First")
        second = engine.create_epic("biz", "Second")
        task = engine.create_task("biz", "Mover", epic_id=first.id)

        engine.update_task(task.id, {"epic_id": second.id})
        assert engine.get_epic(first.id).task_ids == []
        assert engine.get_epic(second.id).task_ids == [task.id]

        engine.update_task(task.id, {"epic_id": None})
        assert engine.get_task(task.id).epic_id is None
        assert engine.get_epic(second.id).task_ids == []
        _assert_epic_membership(engine)

    def test_epic_with_tasks(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        task = engine.create_task("biz", "Member", epic_id=epic.id)
        engine.create_task("biz", "Outsider")
        found, members = engine.get_epic_with_tasks(epic.id)
        assert found.id == epic.id
        assert [t.id for t in members] == [task.id]

    def test_update_epic(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        updated = engine.update_epic(epic.id, {"title": "Launch v2", "status": "active"})
        assert updated.title == "Launch v2"
        assert updated.status == EpicStatus.ACTIVE


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class TestAssignment:
    def test_assign_moves_backlog_to_ready_and_notifies(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Handler")

        task = engine.assign(task.id, [agent.id])

        assert task.status == TaskStatus.READY
        assert task.assignee_ids == [agent.id]
        notes = engine.list_notifications(AgentActor(agent.id))
        assert [n.type for n in notes] == [NotificationType.ASSIGNMENT]
        assert engine.list_activities(task_id=task.id)[0].message == 'Assigned "Handler" to Ada'

    def test_assign_requires_known_agents(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Handler")
        with pytest.raises(NotFoundError):
            engine.assign(task.id, ["agent-missing"])
        with pytest.raises(ValidationError):
            engine.assign(task.id, [])

    def test_unassign_returns_to_backlog(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Handler", assignee_ids=[agent.id])
        engine.assign(task.id, [agent.id])

        task = engine.unassign(task.id)

        assert task.assignee_ids == []
        assert task.status == TaskStatus.BACKLOG
        assert engine.list_subscriptions(task.id) == []

    def test_smart_assign_picks_keyword_match(self, engine: WorkflowEngine) -> None:
        engine.register_agent("Lead", "product", "lead")
        fay = engine.register_agent("Fay", "frontend")
        task = engine.create_task("biz", "Style the modal component")

        result = engine.smart_assign(task.id)

        assert result.success
        assert result.assignee_ids == [fay.id]
        assert "modal" in result.reason

    def test_smart_assign_falls_back_to_lead(self, engine: WorkflowEngine) -> None:
        engine.register_agent("Fay", "frontend")
        lead = engine.register_agent("Lead", "coordinator", "lead")
        task = engine.create_task("biz", "Quarterly review")

        result = engine.smart_assign(task.id)
        assert result.assignee_ids == [lead.id]

    def test_smart_assign_rejects_assigned_task(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Handler", assignee_ids=[agent.id])
        result = engine.smart_assign(task.id)
        assert not result.success
        assert result.reason == "Already assigned"

    def test_smart_assign_without_agents(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Handler")
        result = engine.smart_assign(task.id)
        assert not result.success
        assert engine.get_task(task.id).assignee_ids == []

    def test_auto_assign_backlog(self, engine: WorkflowEngine) -> None:
        ben = engine.register_agent("Ben", "backend")
        fay = engine.register_agent("Fay", "frontend")
        api = engine.create_task("biz", "Add API endpoint for orders")
        modal = engine.create_task("biz", "Style modal component")

        report = engine.auto_assign_backlog(limit=10)

        assert report.processed == 2
        assert report.assigned == 2
        assert engine.get_task(api.id).assignee_ids == [ben.id]
        assert engine.get_task(modal.id).assignee_ids == [fay.id]
        assert engine.get_task(api.id).status == TaskStatus.READY
        assert {r["assigned_to"] for r in report.results} == {"Ben", "Fay"}

    def test_auto_assign_backlog_tie_goes_to_roster_order(self, engine: WorkflowEngine) -> None:
        first = engine.register_agent("A", "backend")
        engine.register_agent("B", "backend")
        one = engine.create_task("biz", "api one")
        two = engine.create_task("biz", "api two")

        report = engine.auto_assign_backlog(limit=10)

        # Freshly assigned tasks are ready, not in_progress, so they add no load.
        assert report.assigned == 2
        assert engine.get_task(one.id).assignee_ids == [first.id]
        assert engine.get_task(two.id).assignee_ids == [first.id]

    def test_auto_assign_backlog_without_agents_reports_failures(self, engine: WorkflowEngine) -> None:
        engine.create_task("biz", "One")
        engine.create_task("biz", "Two")
        report = engine.auto_assign_backlog(limit=1)
        assert report.processed == 1
        assert report.assigned == 0
        assert report.results[0]["success"] is False
        assert "No suitable agents" in report.results[0]["error"]


# ---------------------------------------------------------------------------
# Tags, deletes and comments
# ---------------------------------------------------------------------------

class TestTags:
    def test_add_and_remove(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Plain", tags=["one"])
        task = engine.add_tags(task.id, ["two", "one"])
        assert task.tags == ["one", "two"]
        task = engine.add_tags(task.id, ["one"], action="remove")
        assert task.tags == ["two"]

    def test_limit_applies_to_merged_set(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Plain", tags=[f"t{i}" for i in range(9)])
        with pytest.raises(ValidationError):
            engine.add_tags(task.id, ["x", "y"])
        assert len(engine.get_task(task.id).tags) == 9


class TestDeleteTask:
    def test_only_creator_or_system_may_delete(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        bob = engine.register_agent("Bob", "backend")
        task = engine.create_task("biz", "Mine", created_by=AgentActor(ada.id))

        with pytest.raises(UnauthorizedError):
            engine.delete_task(task.id, AgentActor(bob.id))
        with pytest.raises(UnauthorizedError):
            engine.delete_task(task.id, UserActor("someone"))

        engine.delete_task(task.id, AgentActor(ada.id))
        with pytest.raises(NotFoundError):
            engine.get_task(task.id)

    def test_cascade_cleanup(self, engine: WorkflowEngine) -> None:
        epic = engine.create_epic("biz", "Launch")
        blocker = engine.create_task("biz", "Blocker")
        doomed = engine.create_task("biz", "Doomed", epic_id=epic.id)
        dependent = engine.create_task("biz", "Dependent")
        engine.add_dependency(doomed.id, blocker.id)
        engine.add_dependency(dependent.id, doomed.id)
        engine.post_comment(doomed.id, "first!")

        engine.delete_task(doomed.id, SYSTEM)

        assert engine.get_task(blocker.id).blocks == []
        dependent = engine.get_task(dependent.id)
        assert dependent.blocked_by == []
        assert dependent.status == TaskStatus.READY
        assert engine.get_epic(epic.id).task_ids == []
        snapshot = engine.store.read_snapshot()
        assert len(snapshot.messages) == 0
        assert snapshot.subscriptions_for_task(doomed.id) == []
        assert engine.list_activities()[0].type == ActivityType.TASK_DELETED
        _assert_edges_mutual(engine)
        _assert_epic_membership(engine)


class TestComments:
    def test_mentions_and_subscribers_notified_once(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        bob = engine.register_agent("Bob", "frontend")
        cy = engine.register_agent("Cy", "qa")
        task = engine.create_task("biz", "Checkout", assignee_ids=[ada.id])

        engine.post_comment(task.id, "Can you verify?", AgentActor(bob.id), mentions=[cy.id])

        cy_notes = engine.list_notifications(AgentActor(cy.id))
        assert [n.type for n in cy_notes] == [NotificationType.MENTION]
        assert cy_notes[0].content.startswith('@Bob mentioned you in "Checkout"')
        ada_notes = engine.list_notifications(AgentActor(ada.id))
        assert [n.type for n in ada_notes] == [NotificationType.COMMENT]
        assert engine.list_notifications(AgentActor(bob.id)) == []
        keys = {s.actor.key for s in engine.list_subscriptions(task.id)}
        assert keys == {f"agent:{ada.id}", f"agent:{bob.id}", f"agent:{cy.id}"}
        assert engine.get_agent(bob.id).metrics["comments_made"] == 1

    def test_mention_all_reaches_every_other_agent_once(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        bob = engine.register_agent("Bob", "frontend")
        task = engine.create_task("biz", "Checkout", assignee_ids=[bob.id])

        engine.post_comment(task.id, "Heads up", AgentActor(ada.id), mentions=[bob.id], mention_all=True)

        bob_notes = engine.list_notifications(AgentActor(bob.id))
        assert len(bob_notes) == 1
        assert bob_notes[0].content.startswith("📢 @all: Ada posted in")
        assert engine.list_notifications(AgentActor(ada.id)) == []

    def test_mentions_level_subscriber_skips_generic_comments(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Checkout", assignee_ids=[ada.id])
        engine.subscribe_thread(task.id, AgentActor(ada.id), "mentions")

        engine.post_comment(task.id, "Status?", UserActor("pm"))
        assert engine.list_notifications(AgentActor(ada.id)) == []

    def test_unknown_subscription_level_is_validation_error(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Checkout")
        with pytest.raises(ValidationError):
            engine.subscribe_thread(task.id, UserActor("pm"), "loud")
        assert engine.list_subscriptions(task.id) == []

    def test_anonymous_user_not_subscribed(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Checkout")
        engine.post_comment(task.id, "hello", UserActor())
        assert engine.list_subscriptions(task.id) == []

    def test_replies_are_linked(self, engine: WorkflowEngine) -> None:
        task = engine.create_task("biz", "Checkout")
        root = engine.post_comment(task.id, "root")
        reply = engine.post_comment(task.id, "reply", parent_id=root.id)
        messages = {m.id: m for m in engine.list_messages(task.id)}
        assert messages[root.id].reply_ids == [reply.id]
        with pytest.raises(NotFoundError):
            engine.post_comment(task.id, "orphan", parent_id="msg-missing")

    def test_mark_read(self, engine: WorkflowEngine) -> None:
        ada = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Checkout")
        engine.assign(task.id, [ada.id])
        engine.post_comment(task.id, "ping", UserActor("pm"))
        recipient = AgentActor(ada.id)
        assert engine.count_unread(recipient) == 2

        first = engine.list_notifications(recipient)[0]
        assert engine.mark_notification_read(first.id).read
        assert engine.count_unread(recipient) == 1
        assert engine.mark_all_read(recipient) == 1
        assert engine.count_unread(recipient) == 0


# ---------------------------------------------------------------------------
# Rate limits and agents
# ---------------------------------------------------------------------------

class TestRateLimits:
    def test_create_task_limited_per_actor(self, state_dir: Path, clock: _Clock) -> None:
        config = WorkflowConfig(rate_limits={"create_task": RateLimitRule(2, 60_000)})
        engine = WorkflowEngine(state_dir, config=config, clock=clock)
        user = UserActor("u1")

        engine.create_task("biz", "One", created_by=user)
        engine.create_task("biz", "Two", created_by=user)
        with pytest.raises(RateLimitExceededError):
            engine.create_task("biz", "Three", created_by=user)
        assert len(engine.list_tasks()) == 2

        # Other actors and the system are unaffected.
        engine.create_task("biz", "Other", created_by=UserActor("u2"))
        engine.create_task("biz", "System")

        clock.advance(60_001)
        engine.create_task("biz", "Later", created_by=user)
        status = engine.get_rate_limit_status("create_task", user)
        assert status is not None and status.remaining == 1

    def test_clear_rate_limit(self, state_dir: Path, clock: _Clock) -> None:
        config = WorkflowConfig(rate_limits={"create_task": RateLimitRule(1, 60_000)})
        engine = WorkflowEngine(state_dir, config=config, clock=clock)
        user = UserActor("u1")
        engine.create_task("biz", "One", created_by=user)
        assert engine.clear_rate_limit("create_task", user)
        engine.create_task("biz", "Two", created_by=user)


class TestAgents:
    def test_heartbeat_throttled_silently(self, engine: WorkflowEngine) -> None:
        agent = engine.register_agent("Ada", "backend")
        results = [engine.heartbeat(agent.id) for _ in range(7)]
        assert results == [True] * 6 + [False]

    def test_heartbeat_revives_offline_agent(self, engine: WorkflowEngine, clock: _Clock) -> None:
        agent = engine.register_agent("Ada", "backend")
        clock.advance(301_000)
        report = engine.sweep_stale_agents()
        assert report.affected == 1
        assert engine.get_agent(agent.id).status == AgentStatus.OFFLINE

        assert engine.heartbeat(agent.id)
        assert engine.get_agent(agent.id).status == AgentStatus.IDLE


class TestPersistence:
    def test_state_survives_new_engine(self, state_dir: Path) -> None:
        first = WorkflowEngine(state_dir)
        epic = first.create_epic("biz", "Launch")
        task = first.create_task("biz", "Durable", epic_id=epic.id, created_by=UserActor("u1"))

        second = WorkflowEngine(state_dir)
        loaded = second.get_task(task.id)
        assert loaded.title == "Durable"
        assert loaded.created_by == UserActor("u1")
        assert second.get_epic(epic.id).task_ids == [task.id]

    def test_for_project_reads_config(self, tmp_path: Path) -> None:
        state = tmp_path / ".mission_control"
        state.mkdir()
        (state / "config.yaml").write_text("ticket_prefix: MC\n", encoding="utf-8")
        engine = WorkflowEngine.for_project(tmp_path)
        assert engine.create_task("biz", "Configured").ticket_number == "MC-001"
