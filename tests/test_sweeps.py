"""Tests for periodic maintenance sweeps (workflow/sweeps.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from mission_control.config import WorkflowConfig
from mission_control.utils import _iso_from_ms, _now_ms
from mission_control.workflow.actors import AgentActor
from mission_control.workflow.engine import WorkflowEngine
from mission_control.workflow.model import AgentStatus, Notification
from mission_control.workflow.store import WorkflowTx
from mission_control.workflow.sweeps import sweep_expired_notifications, sweep_stale_agents


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".mission_control"
    d.mkdir()
    return d


class TestExpiredNotifications:
    def test_expired_removed_and_fresh_kept(self) -> None:
        now = 1_700_000_000_000
        tx = WorkflowTx({})
        tx.notifications.add(Notification(id="old", expires_at=_iso_from_ms(now - 1)))
        tx.notifications.add(Notification(id="new", expires_at=_iso_from_ms(now + 60_000)))
        tx.notifications.add(Notification(id="forever"))

        report = sweep_expired_notifications(tx, now)

        assert report.checked == 2
        assert report.affected == 1
        assert sorted(n.id for n in tx.notifications.all()) == ["forever", "new"]

    def test_bad_timestamp_is_reported_not_fatal(self) -> None:
        tx = WorkflowTx({})
        tx.notifications.add(Notification(id="bad", expires_at="not-a-date"))
        tx.notifications.add(Notification(id="old", expires_at=_iso_from_ms(0)))

        report = sweep_expired_notifications(tx, 1_000)

        assert report.failed == 1
        assert report.affected == 1
        assert report.errors[0].startswith("bad:")
        assert [n.id for n in tx.notifications.all()] == ["bad"]

    def test_engine_sweep_uses_configured_ttl(self, state_dir: Path) -> None:
        engine = WorkflowEngine(state_dir, config=WorkflowConfig(notification_ttl_seconds=60))
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Ping")
        engine.assign(task.id, [agent.id])
        assert engine.count_unread(AgentActor(agent.id)) == 1

        assert engine.sweep_expired_notifications().affected == 0
        report = engine.sweep_expired_notifications(now_ms=_now_ms() + 120_000)
        assert report.affected == 1

    def test_expiry_follows_engine_clock(self, state_dir: Path) -> None:
        now = [1_700_000_000_000]
        engine = WorkflowEngine(
            state_dir,
            config=WorkflowConfig(notification_ttl_seconds=60),
            clock=lambda: now[0],
        )
        agent = engine.register_agent("Ada", "backend")
        task = engine.create_task("biz", "Ping")
        engine.assign(task.id, [agent.id])

        note = engine.list_notifications(AgentActor(agent.id))[0]
        assert note.expires_at == _iso_from_ms(now[0] + 60_000)

        now[0] += 59_999
        assert engine.sweep_expired_notifications().affected == 0
        now[0] += 1
        assert engine.sweep_expired_notifications().affected == 1
        assert engine.list_notifications(AgentActor(agent.id)) == []


class TestStaleAgents:
    def test_marks_only_stale_agents(self, state_dir: Path) -> None:
        clock_now = [1_700_000_000_000]
        engine = WorkflowEngine(state_dir, clock=lambda: clock_now[0])
        stale = engine.register_agent("Stale", "qa")
        clock_now[0] += 200_000
        fresh = engine.register_agent("Fresh", "qa")
        clock_now[0] += 101_000

        report = engine.sweep_stale_agents()

        assert report.checked == 2
        assert report.affected == 1
        assert engine.get_agent(stale.id).status == AgentStatus.OFFLINE
        assert engine.get_agent(fresh.id).status == AgentStatus.IDLE

        # Offline agents are not rechecked.
        assert engine.sweep_stale_agents().checked == 1

    def test_missing_heartbeat_counts_as_stale(self) -> None:
        tx = WorkflowTx({"agents": [{"id": "agent-1", "name": "Ghost"}]})
        report = sweep_stale_agents(tx, 1_000, stale_after_seconds=300)
        assert report.affected == 1
        assert tx.agents.get("agent-1").status == AgentStatus.OFFLINE
