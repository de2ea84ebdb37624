"""Tests for the YAML-backed workflow store (workflow/store.py)."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from mission_control.errors import StoreCorruptedError
from mission_control.workflow.actors import AgentActor
from mission_control.workflow.model import Task, TaskPriority, ThreadSubscription
from mission_control.workflow.store import WorkflowStore, WorkflowTx


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".mission_control"
    d.mkdir()
    return d


class TestWorkflowStore:
    def test_empty_store_reads_empty(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        snapshot = store.read_snapshot()
        assert snapshot.tasks.all() == []
        assert not store.path.exists()

    def test_commit_persists(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        with store.transaction() as tx:
            tx.tasks.add(Task(id="task-1", business_id="biz", title="Persist me"))

        raw = yaml.safe_load(store.path.read_text(encoding="utf-8"))
        assert raw["version"] == 1
        assert raw["tasks"][0]["title"] == "Persist me"
        assert WorkflowStore(state_dir).read_snapshot().tasks.get("task-1") is not None

    def test_exception_discards_changes(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        with store.transaction() as tx:
            tx.tasks.add(Task(id="task-1", title="Original"))

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.tasks.get("task-1").title = "Changed"
                tx.set_setting("counter", 3)
                raise RuntimeError("boom")

        snapshot = store.read_snapshot()
        assert snapshot.tasks.get("task-1").title == "Original"
        assert snapshot.get_setting("counter") is None

    def test_nested_transaction_shares_state(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        with store.transaction() as outer:
            outer.tasks.add(Task(id="task-1", title="Outer"))
            with store.transaction() as inner:
                assert inner is outer
                inner.tasks.get("task-1").priority = TaskPriority.P0
        assert store.read_snapshot().tasks.get("task-1").priority == TaskPriority.P0

    def test_read_only_transaction_does_not_write(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        with store.transaction() as tx:
            tx.tasks.all()
        assert not store.path.exists()

    def test_corrupted_file_is_left_alone(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        store.path.write_text("tasks: [unclosed\n", encoding="utf-8")
        with pytest.raises(StoreCorruptedError):
            with store.transaction():
                pass
        assert store.path.read_text(encoding="utf-8") == "tasks: [unclosed\n"

    def test_non_mapping_document_rejected(self, state_dir: Path) -> None:
        store = WorkflowStore(state_dir)
        store.path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(StoreCorruptedError):
            store.read_snapshot()


class TestWorkflowTx:
    def test_collections_skip_malformed_records(self) -> None:
        tx = WorkflowTx({"tasks": [{"id": "task-1", "title": "ok"}, "garbage", 7], "epics": "nope"})
        assert [t.id for t in tx.tasks.all()] == ["task-1"]
        assert tx.epics.all() == []

    def test_duplicate_add_rejected(self) -> None:
        tx = WorkflowTx({})
        tx.tasks.add(Task(id="task-1"))
        with pytest.raises(ValueError):
            tx.tasks.add(Task(id="task-1"))

    def test_remove_where_and_dirty(self) -> None:
        tx = WorkflowTx({"tasks": [{"id": "task-1"}, {"id": "task-2", "business_id": "x"}]})
        assert not tx.dirty
        assert tx.tasks.remove_where(lambda t: t.business_id == "x") == 1
        assert tx.dirty
        assert len(tx.tasks) == 1

    def test_settings(self) -> None:
        tx = WorkflowTx({"settings": {"biz:taskCounter": {"value": 2}}})
        assert tx.get_setting("biz:taskCounter") == {"value": 2}
        tx.set_setting("ratelimit:x", {"count": 1})
        assert tx.settings_with_prefix("ratelimit:") == {"ratelimit:x": {"count": 1}}
        assert tx.delete_setting("ratelimit:x")
        assert not tx.delete_setting("ratelimit:x")

    def test_find_subscription_by_actor_key(self) -> None:
        tx = WorkflowTx({})
        sub = tx.subscriptions.add(ThreadSubscription(actor=AgentActor("a1"), task_id="task-1"))
        assert tx.find_subscription(AgentActor("a1"), "task-1") is sub
        assert tx.find_subscription(AgentActor("a2"), "task-1") is None
        assert tx.subscriptions_for_task("task-1") == [sub]
