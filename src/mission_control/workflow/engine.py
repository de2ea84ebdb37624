"""Workflow engine: the operation surface for tasks, epics, comments and agents.

Every mutating method opens one store transaction and runs the whole
pipeline inside it:

    rate limit -> validation -> record changes -> epic sync -> fan-out

so a failure at any step leaves the store exactly as it was.  Methods called
from inside another engine method reuse the open transaction.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from ..config import WorkflowConfig, load_workflow_config
from ..constants import DEFAULT_BACKLOG_LIMIT, MAX_INFERRED_TAGS, STATE_DIR_NAME
from ..errors import CircularDependencyError, NotFoundError, UnauthorizedError, ValidationError
from ..utils import _now_iso, _now_ms
from . import migrations as migration_steps
from . import sweeps
from .actors import SYSTEM, Actor, AgentActor, SystemActor, agent_id_of
from .assignment import (
    AssignmentResult,
    BacklogAssignmentReport,
    find_best_agent,
    pick_smart_assignee,
    workload_by_agent,
)
from .epics import rebuild_membership, recalculate_progress, sync_epic_task_link
from .fanout import actor_name, fan_out_comment, log_activity, notify_agents, subscribe, unsubscribe
from .graph import DependencyGraph
from .migrations import MigrationResult
from .model import (
    ActivityType,
    Activity,
    Agent,
    AgentLevel,
    AgentStatus,
    Epic,
    Message,
    Notification,
    NotificationType,
    SubscriptionLevel,
    Task,
    TaskStatus,
    ThreadSubscription,
)
from .rate_limit import (
    RateLimitDecision,
    check_rate_limit_silent,
    clear_rate_limit,
    enforce_rate_limit,
    get_rate_limit_status,
    rate_limit_key,
)
from .schemas import (
    CommentInput,
    CreateEpicInput,
    CreateTaskInput,
    RegisterAgentInput,
    TagsInput,
    UpdateEpicInput,
    UpdateTaskInput,
    validate_input,
)
from .state_machine import apply_transition, describe_state_machine
from .store import WorkflowStore, WorkflowTx
from .sweeps import SweepReport
from .tickets import next_ticket_number, set_ticket_prefix

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tag inference
# ---------------------------------------------------------------------------

TAG_KEYWORDS: dict[str, list[str]] = {
    "api": ["api", "endpoint", "route", "rest", "graphql"],
    "ui": ["ui", "button", "modal", "component", "layout", "design", "styling", "css"],
    "bug": ["bug", "fix", "error", "crash", "broken", "issue", "defect"],
    "auth": ["auth", "login", "token", "session", "permission", "access", "security"],
    "database": ["db", "database", "schema", "query", "migration", "sql", "orm"],
    "testing": ["test", "spec", "coverage", "jest", "unit", "integration"],
    "docs": ["doc", "documentation", "readme", "guide", "tutorial", "manual"],
    "performance": ["perf", "performance", "speed", "optimize", "cache", "efficient"],
}


def infer_tags(title: str, description: str) -> list[str]:
    """Tag categories whose keywords appear in the task text (at most five)."""
    content = f"{title} {description}".lower()
    tags = [tag for tag, words in TAG_KEYWORDS.items() if any(w in content for w in words)]
    return tags[:MAX_INFERRED_TAGS]


MIGRATION_NAMES = (
    "migrate_tasks_to_epic",
    "smart_assign_epics",
    "backfill_ticket_numbers",
    "backfill_thread_subscriptions",
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class WorkflowEngine:
    """Manage the lifecycle of tasks, epics and their derived records.

    Parameters
    ----------
    state_dir:
        Path to the ``.mission_control/`` directory.
    config:
        Workflow settings; defaults apply when omitted.
    clock:
        Returns the current time in epoch milliseconds.  Rate limiting and
        sweeps read it, so tests can move time forward.
    """

    def __init__(
        self,
        state_dir: Path,
        config: Optional[WorkflowConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.state_dir = state_dir
        self.store = WorkflowStore(state_dir)
        self.config = config or WorkflowConfig()
        self._clock = clock or _now_ms

    @classmethod
    def for_project(cls, project_dir: Path) -> "WorkflowEngine":
        """Build an engine for *project_dir*, reading its optional config file."""
        config, err = load_workflow_config(project_dir)
        if err:
            logger.warning("Ignoring unreadable workflow config: %s", err)
        return cls(project_dir.resolve() / STATE_DIR_NAME, config=config)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _limit(self, tx: WorkflowTx, operation: str, actor: Actor) -> Optional[RateLimitDecision]:
        # System work is never throttled.
        if isinstance(actor, SystemActor):
            return None
        rule = self.config.rate_limit_for(operation)
        if rule is None:
            return None
        return enforce_rate_limit(
            tx,
            rate_limit_key(operation, actor.key),
            rule.max_calls,
            rule.window_ms,
            self._clock(),
        )

    @staticmethod
    def _task(tx: WorkflowTx, task_id: str) -> Task:
        task = tx.tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    @staticmethod
    def _epic(tx: WorkflowTx, epic_id: str) -> Epic:
        epic = tx.epics.get(epic_id)
        if epic is None:
            raise NotFoundError("Epic", epic_id)
        return epic

    @staticmethod
    def _agent(tx: WorkflowTx, agent_id: str) -> Agent:
        agent = tx.agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def _require_agents(self, tx: WorkflowTx, agent_ids: Iterable[str]) -> list[Agent]:
        return [self._agent(tx, agent_id) for agent_id in agent_ids]

    @staticmethod
    def _metric_agents(tx: WorkflowTx, task: Task) -> list[Agent]:
        """Agents credited for a task: its agent assignees, else an agent creator."""
        agents = [a for a in (tx.agents.get(aid) for aid in task.assignee_ids) if a is not None]
        if agents:
            return agents
        creator = tx.agents.get(agent_id_of(task.created_by))
        return [creator] if creator is not None else []

    def _has_active_blockers(self, tx: WorkflowTx, task: Task) -> bool:
        for blocker_id in task.blocked_by:
            blocker = tx.tasks.get(blocker_id)
            if blocker is not None and blocker.status != TaskStatus.DONE:
                return True
        return False

    def _change_status(self, tx: WorkflowTx, task: Task, new_status: TaskStatus, actor: Actor) -> Task:
        old = apply_transition(task, new_status)
        done = new_status == TaskStatus.DONE
        message = (
            f'Task "{task.title}" completed'
            if done
            else f'Task "{task.title}" moved from {old.value} to {new_status.value}'
        )
        log_activity(
            tx,
            ActivityType.TASK_COMPLETED if done else ActivityType.TASK_UPDATED,
            actor,
            message,
            task=task,
            old_value=old.value,
            new_value=new_status.value,
        )
        recalculate_progress(tx, task.epic_id, actor)

        for agent in self._metric_agents(tx, task):
            if done:
                agent.bump_metric("tasks_completed")
            elif new_status == TaskStatus.BLOCKED:
                agent.bump_metric("tasks_blocked")
        for agent in (tx.agents.get(aid) for aid in task.assignee_ids):
            if agent is None:
                continue
            if new_status == TaskStatus.IN_PROGRESS:
                agent.status = AgentStatus.ACTIVE
                agent.current_task_id = task.id
            elif done and agent.current_task_id in (None, task.id):
                agent.status = AgentStatus.IDLE
                agent.current_task_id = None
        return task

    def _maybe_unblock(self, tx: WorkflowTx, task: Task, actor: Actor) -> bool:
        """Move a blocked task with no unfinished blockers back to ready."""
        if task.status != TaskStatus.BLOCKED or self._has_active_blockers(tx, task):
            return False
        apply_transition(task, TaskStatus.READY)
        log_activity(
            tx,
            ActivityType.TASK_UPDATED,
            actor,
            f'Task "{task.title}" automatically unblocked, all dependencies cleared',
            task=task,
            old_value=TaskStatus.BLOCKED.value,
            new_value=TaskStatus.READY.value,
        )
        notify_agents(
            tx,
            task.assignee_ids,
            NotificationType.DEPENDENCY_UNBLOCKED,
            f'Task "{task.title}" is now unblocked and ready to work on',
            task=task,
            from_actor=actor,
            ttl_seconds=self.config.notification_ttl_seconds,
            now_ms=self._clock(),
        )
        logger.info("Task %s unblocked", task.id)
        return True

    def _assign_agents(self, tx: WorkflowTx, task: Task, agents: list[Agent], actor: Actor) -> Task:
        previous = set(task.assignee_ids)
        task.assignee_ids = [a.id for a in agents]
        if task.status == TaskStatus.BACKLOG:
            apply_transition(task, TaskStatus.READY)
        task.touch()
        names = ", ".join(a.name for a in agents)
        log_activity(
            tx,
            ActivityType.TASK_ASSIGNED,
            actor,
            f'Assigned "{task.title}" to {names}',
            task=task,
            new_value=",".join(task.assignee_ids),
        )
        for agent in agents:
            subscribe(tx, AgentActor(agent.id), task)
        newcomers = [a.id for a in agents if a.id not in previous and AgentActor(a.id).key != actor.key]
        notify_agents(
            tx,
            newcomers,
            NotificationType.ASSIGNMENT,
            f'{actor_name(tx, actor)} assigned you to "{task.title}"',
            task=task,
            from_actor=actor,
            ttl_seconds=self.config.notification_ttl_seconds,
            now_ms=self._clock(),
        )
        return task

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        business_id: str,
        title: str,
        description: str = "",
        priority: str = "P2",
        assignee_ids: Optional[list[str]] = None,
        epic_id: Optional[str] = None,
        created_by: Actor = SYSTEM,
        tags: Optional[list[str]] = None,
        time_estimate: Optional[str] = None,
        due_date: Optional[int] = None,
        parent_id: Optional[str] = None,
    ) -> Task:
        """Create a task in ``backlog`` and run its derived effects."""
        data = validate_input(
            CreateTaskInput,
            {
                "business_id": business_id,
                "title": title,
                "description": description,
                "priority": priority,
                "assignee_ids": assignee_ids or [],
                "epic_id": epic_id,
                "parent_id": parent_id,
                "tags": tags or [],
                "time_estimate": time_estimate,
                "due_date": due_date,
            },
        )
        with self.store.transaction() as tx:
            self._limit(tx, "create_task", created_by)
            epic = self._epic(tx, data.epic_id) if data.epic_id else None
            parent = self._task(tx, data.parent_id) if data.parent_id else None
            assignees = data.assignee_ids
            creator_agent = agent_id_of(created_by)
            if not assignees and creator_agent:
                assignees = [creator_agent]
            self._require_agents(tx, assignees)

            task = Task(
                business_id=data.business_id,
                title=data.title,
                description=data.description,
                priority=data.priority,
                tags=data.tags or infer_tags(data.title, data.description),
                time_estimate=data.time_estimate,
                due_date=data.due_date,
                epic_id=epic.id if epic else None,
                parent_id=parent.id if parent else None,
                assignee_ids=list(assignees),
                created_by=created_by,
            )
            task.ticket_number = next_ticket_number(tx, task.business_id, self.config.ticket_prefix)
            tx.tasks.add(task)

            sync_epic_task_link(tx, task.id, None, task.epic_id)
            if parent is not None and task.id not in parent.subtask_ids:
                parent.subtask_ids.append(task.id)
                parent.touch()

            log_activity(tx, ActivityType.TASK_CREATED, created_by, f"Created task: {task.title}", task=task)
            for agent_id in task.assignee_ids:
                subscribe(tx, AgentActor(agent_id), task)
            recalculate_progress(tx, task.epic_id, created_by)

            creator = tx.agents.get(creator_agent)
            if creator is not None:
                creator.bump_metric("tasks_created")

        logger.info("Created task %s (%s): %s", task.id, task.ticket_number, task.title)
        return task

    def create_subtask(
        self,
        parent_id: str,
        title: str,
        created_by: Actor = SYSTEM,
        description: str = "",
        priority: Optional[str] = None,
    ) -> Task:
        """Create a child task that inherits the parent's business and epic."""
        with self.store.transaction() as tx:
            parent = self._task(tx, parent_id)
            return self.create_task(
                parent.business_id,
                title,
                description=description,
                priority=priority or "P2",
                epic_id=parent.epic_id,
                created_by=created_by,
                parent_id=parent.id,
            )

    def get_task(self, task_id: str) -> Task:
        return self._task(self.store.read_snapshot(), task_id)

    def list_tasks(
        self,
        *,
        business_id: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assignee_id: Optional[str] = None,
        epic_id: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> list[Task]:
        tx = self.store.read_snapshot()
        out: list[Task] = []
        query = search.lower() if search else None
        for t in tx.tasks.all():
            if business_id and t.business_id != business_id:
                continue
            if status and t.status.value != status:
                continue
            if priority and t.priority.value != priority:
                continue
            if assignee_id and assignee_id not in t.assignee_ids:
                continue
            if epic_id and t.epic_id != epic_id:
                continue
            if tag and tag not in t.tags:
                continue
            if parent_id is not None and t.parent_id != parent_id:
                continue
            if query:
                haystack = f"{t.title} {t.description} {t.ticket_number or ''}".lower()
                if query not in haystack:
                    continue
            out.append(t)
        return out

    def update_task(
        self,
        task_id: str,
        changes: Union[dict[str, Any], UpdateTaskInput],
        actor: Actor = SYSTEM,
    ) -> Task:
        """Apply a partial update; ``status`` goes through the state machine."""
        data = validate_input(UpdateTaskInput, changes)
        fields = data.model_dump(exclude_unset=True)
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            new_status = fields.pop("status", None)
            if "tags" in fields and fields["tags"] is None:
                fields.pop("tags")

            if "epic_id" in fields:
                new_epic_id = fields.pop("epic_id")
                if new_epic_id != task.epic_id:
                    self.assign_epic(task.id, new_epic_id, actor)

            changed: list[str] = []
            for name, value in fields.items():
                if value is None and name in {"title", "description", "priority"}:
                    continue
                if getattr(task, name) != value:
                    setattr(task, name, value)
                    changed.append(name)
            if changed:
                task.touch()
                log_activity(
                    tx,
                    ActivityType.TASK_UPDATED,
                    actor,
                    f'Updated {", ".join(changed)} on "{task.title}"',
                    task=task,
                )
            if new_status is not None and new_status != task.status:
                self._limit(tx, "update_status", actor)
                self._change_status(tx, task, new_status, actor)
            return task

    def update_status(self, task_id: str, status: Union[str, TaskStatus], actor: Actor = SYSTEM) -> Task:
        """Move a task to *status*, enforcing the transition table."""
        try:
            target = TaskStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown status {status!r}", status=str(status)) from exc
        with self.store.transaction() as tx:
            self._limit(tx, "update_status", actor)
            task = self._task(tx, task_id)
            self._change_status(tx, task, target, actor)
        logger.info("Task %s -> %s", task_id, target.value)
        return task

    def add_tags(
        self,
        task_id: str,
        tags: list[str],
        action: str = "add",
        actor: Actor = SYSTEM,
    ) -> Task:
        data = validate_input(TagsInput, {"tags": tags, "action": action})
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            if data.action == "add":
                merged = list(task.tags)
                merged.extend(t for t in data.tags if t not in merged)
                # Tag limits apply to the merged set.
                task.tags = validate_input(UpdateTaskInput, {"tags": merged}).tags or []
                verb = "Added tags"
            else:
                task.tags = [t for t in task.tags if t not in data.tags]
                verb = "Removed tags"
            task.touch()
            log_activity(
                tx,
                ActivityType.TASK_UPDATED,
                actor,
                f'{verb} on "{task.title}": {", ".join(data.tags)}',
                task=task,
            )
            return task

    def delete_task(self, task_id: str, actor: Actor = SYSTEM) -> Task:
        """Delete a task and every record that points at it.

        Only the creator or a system actor may delete.
        """
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            if not isinstance(actor, SystemActor) and actor.key != task.created_by.key:
                raise UnauthorizedError(
                    "Unauthorized: only the task creator can delete this task",
                    task_id=task_id,
                    actor=actor.key,
                )

            for blocker_id in task.blocked_by:
                blocker = tx.tasks.get(blocker_id)
                if blocker is not None:
                    blocker.remove_blocks(task_id)
            dependents: list[Task] = []
            for dependent_id in task.blocks:
                dependent = tx.tasks.get(dependent_id)
                if dependent is not None:
                    dependent.remove_blocked_by(task_id)
                    dependents.append(dependent)

            if task.parent_id:
                parent = tx.tasks.get(task.parent_id)
                if parent is not None and task_id in parent.subtask_ids:
                    parent.subtask_ids.remove(task_id)
                    parent.touch()
            for child_id in task.subtask_ids:
                child = tx.tasks.get(child_id)
                if child is not None and child.parent_id == task_id:
                    child.parent_id = None
                    child.touch()

            for agent in tx.agents.all():
                if agent.current_task_id == task_id:
                    agent.current_task_id = None

            tx.messages.remove_where(lambda m: m.task_id == task_id)
            tx.subscriptions.remove_where(lambda s: s.task_id == task_id)
            tx.notifications.remove_where(lambda n: n.task_id == task_id)
            tx.tasks.remove(task_id)

            sync_epic_task_link(tx, task_id, task.epic_id, None)
            recalculate_progress(tx, task.epic_id, actor)
            for dependent in dependents:
                self._maybe_unblock(tx, dependent, actor)

            log_activity(tx, ActivityType.TASK_DELETED, actor, f'Deleted task: "{task.title}"', task=task)
        logger.info("Deleted task %s", task_id)
        return task

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, blocker_id: str, actor: Actor = SYSTEM) -> Task:
        """Record that *blocker_id* must finish before *task_id*.

        Raises :class:`CircularDependencyError` without touching either task
        when the edge would close a cycle.  An existing edge is a no-op.
        """
        with self.store.transaction() as tx:
            self._limit(tx, "add_dependency", actor)
            task = self._task(tx, task_id)
            blocker = self._task(tx, blocker_id)
            if task_id == blocker_id:
                raise ValidationError("A task cannot block itself", task_id=task_id)
            if blocker_id in task.blocked_by and task_id in blocker.blocks:
                return task
            if DependencyGraph(tx.tasks.all()).would_create_cycle(task_id, blocker_id):
                raise CircularDependencyError(task_id, blocker_id)

            task.add_blocked_by(blocker_id)
            blocker.add_blocks(task_id)

            if blocker.status != TaskStatus.DONE and task.status not in (TaskStatus.DONE, TaskStatus.BLOCKED):
                old = apply_transition(task, TaskStatus.BLOCKED)
                log_activity(
                    tx,
                    ActivityType.TASK_BLOCKED,
                    actor,
                    f'Task "{task.title}" automatically blocked by "{blocker.title}"',
                    task=task,
                    old_value=old.value,
                    new_value=TaskStatus.BLOCKED.value,
                )
                for agent in self._metric_agents(tx, task):
                    agent.bump_metric("tasks_blocked")

            log_activity(
                tx,
                ActivityType.DEPENDENCY_ADDED,
                actor,
                f'Added dependency: "{task.title}" is now blocked by "{blocker.title}"',
                task=task,
                new_value=blocker_id,
            )
        logger.info("Dependency added: %s blocked by %s", task_id, blocker_id)
        return task

    def remove_dependency(self, task_id: str, blocker_id: str, actor: Actor = SYSTEM) -> Task:
        """Drop the edge and unblock the task if nothing unfinished still blocks it."""
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            blocker = self._task(tx, blocker_id)
            if blocker_id not in task.blocked_by and task_id not in blocker.blocks:
                return task
            task.remove_blocked_by(blocker_id)
            blocker.remove_blocks(task_id)
            self._maybe_unblock(tx, task, actor)
            log_activity(
                tx,
                ActivityType.DEPENDENCY_REMOVED,
                actor,
                f'Removed dependency: "{task.title}" is no longer blocked by "{blocker.title}"',
                task=task,
                old_value=blocker_id,
            )
        logger.info("Dependency removed: %s no longer blocked by %s", task_id, blocker_id)
        return task

    def _graph(self) -> DependencyGraph:
        return DependencyGraph(self.store.read_snapshot().tasks.all())

    def get_transitive_dependencies(self, task_id: str) -> list[str]:
        graph = self._graph()
        if task_id not in graph.tasks:
            raise NotFoundError("Task", task_id)
        return graph.transitive_dependencies(task_id)

    def get_transitive_dependents(self, task_id: str) -> list[str]:
        graph = self._graph()
        if task_id not in graph.tasks:
            raise NotFoundError("Task", task_id)
        return graph.transitive_dependents(task_id)

    def get_critical_path(self, task_id: str) -> list[str]:
        graph = self._graph()
        if task_id not in graph.tasks:
            raise NotFoundError("Task", task_id)
        return graph.critical_path(task_id)

    def get_dependency_graph(self, task_id: Optional[str] = None) -> dict[str, list[str]]:
        graph = self._graph()
        if task_id is not None and task_id not in graph.tasks:
            raise NotFoundError("Task", task_id)
        return graph.subgraph(task_id)

    def get_execution_order(self, business_id: Optional[str] = None) -> list[list[str]]:
        tasks = self.store.read_snapshot().tasks.all()
        if business_id:
            tasks = [t for t in tasks if t.business_id == business_id]
        return DependencyGraph(tasks).execution_order()

    @staticmethod
    def describe_state_machine() -> dict[str, Any]:
        return describe_state_machine()

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(self, task_id: str, assignee_ids: list[str], actor: Actor = SYSTEM) -> Task:
        ids: list[str] = []
        for agent_id in assignee_ids:
            if agent_id and agent_id not in ids:
                ids.append(agent_id)
        if not ids:
            raise ValidationError("assign requires at least one assignee; use unassign to clear", task_id=task_id)
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            agents = self._require_agents(tx, ids)
            self._assign_agents(tx, task, agents, actor)
        logger.info("Assigned %s to %s", task_id, ids)
        return task

    def unassign(self, task_id: str, actor: Actor = SYSTEM) -> Task:
        """Clear assignees and drop their thread subscriptions.

        Tasks that may legally move to ``backlog`` go back there; later
        stages keep their status.
        """
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            previous = list(task.assignee_ids)
            task.assignee_ids = []
            task.touch()
            for agent_id in previous:
                unsubscribe(tx, AgentActor(agent_id), task.id)
            if task.status in (TaskStatus.READY, TaskStatus.BLOCKED) and not self._has_active_blockers(tx, task):
                apply_transition(task, TaskStatus.BACKLOG)
            log_activity(
                tx,
                ActivityType.TASK_UPDATED,
                actor,
                f'Unassigned all agents from "{task.title}"',
                task=task,
                old_value=",".join(previous) or None,
            )
            return task

    def smart_assign(self, task_id: str, actor: Optional[Actor] = None) -> AssignmentResult:
        """Assign the best keyword match, or the lead, to an unassigned task."""
        actor = actor or SYSTEM
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            if task.assignee_ids:
                return AssignmentResult(False, task_id, list(task.assignee_ids), "Already assigned")
            agent, reason = pick_smart_assignee(tx.agents.all(), task, self.config.role_keywords)
            if agent is None:
                return AssignmentResult(False, task_id, [], reason)
            self._assign_agents(tx, task, [agent], actor)
        logger.info("Smart-assigned %s to %s", task_id, agent.id)
        return AssignmentResult(True, task_id, [agent.id], reason)

    def auto_assign_backlog(self, limit: int = DEFAULT_BACKLOG_LIMIT, actor: Actor = SYSTEM) -> BacklogAssignmentReport:
        """Assign up to *limit* unassigned backlog tasks to their best-matching agents.

        Per-task failures are recorded in the report and never abort the batch.
        """
        report = BacklogAssignmentReport()
        if limit < 1:
            return report
        with self.store.transaction() as tx:
            agents = tx.agents.all()
            workload = workload_by_agent(tx.tasks.all())
            pending = [
                t for t in tx.tasks.all() if t.status == TaskStatus.BACKLOG and not t.assignee_ids
            ][:limit]
            for task in pending:
                report.processed += 1
                try:
                    agent = find_best_agent(
                        agents,
                        task,
                        workload,
                        self.config.workload_penalty,
                        self.config.role_keywords,
                    )
                    if agent is None:
                        raise ValidationError("No suitable agents found", task_id=task.id)
                    self._assign_agents(tx, task, [agent], actor)
                    report.assigned += 1
                    report.results.append(
                        {"task_id": task.id, "task_title": task.title, "success": True, "assigned_to": agent.name}
                    )
                except Exception as exc:
                    logger.warning("Auto-assign skipped %s: %s", task.id, exc)
                    report.results.append(
                        {"task_id": task.id, "task_title": task.title, "success": False, "error": str(exc)}
                    )
        logger.info("Backlog auto-assign: %d/%d assigned", report.assigned, report.processed)
        return report

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def create_epic(
        self,
        business_id: str,
        title: str,
        description: str = "",
        owner_id: Optional[str] = None,
        actor: Actor = SYSTEM,
    ) -> Epic:
        data = validate_input(
            CreateEpicInput,
            {"business_id": business_id, "title": title, "description": description, "owner_id": owner_id},
        )
        with self.store.transaction() as tx:
            if data.owner_id:
                self._agent(tx, data.owner_id)
            epic = Epic(
                business_id=data.business_id,
                title=data.title,
                description=data.description,
                owner_id=data.owner_id,
            )
            tx.epics.add(epic)
            log_activity(tx, ActivityType.EPIC_CREATED, actor, f"Created epic: {epic.title}", epic=epic)
        logger.info("Created epic %s: %s", epic.id, epic.title)
        return epic

    def update_epic(
        self,
        epic_id: str,
        changes: Union[dict[str, Any], UpdateEpicInput],
        actor: Actor = SYSTEM,
    ) -> Epic:
        data = validate_input(UpdateEpicInput, changes)
        fields = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        with self.store.transaction() as tx:
            epic = self._epic(tx, epic_id)
            changed = [name for name, value in fields.items() if getattr(epic, name) != value]
            for name in changed:
                setattr(epic, name, fields[name])
            if changed:
                epic.touch()
                log_activity(
                    tx,
                    ActivityType.EPIC_UPDATED,
                    actor,
                    f'Updated {", ".join(changed)} on epic "{epic.title}"',
                    epic=epic,
                )
            return epic

    def get_epic(self, epic_id: str) -> Epic:
        return self._epic(self.store.read_snapshot(), epic_id)

    def list_epics(self, business_id: Optional[str] = None) -> list[Epic]:
        epics = self.store.read_snapshot().epics.all()
        if business_id:
            epics = [e for e in epics if e.business_id == business_id]
        return epics

    def get_epic_with_tasks(self, epic_id: str) -> tuple[Epic, list[Task]]:
        tx = self.store.read_snapshot()
        epic = self._epic(tx, epic_id)
        return epic, tx.tasks.filter(lambda t: t.epic_id == epic_id)

    def assign_epic(self, task_id: str, epic_id: Optional[str], actor: Actor = SYSTEM) -> Task:
        """Move a task into *epic_id* (or out of any epic) and recompute both epics."""
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            new_epic = self._epic(tx, epic_id) if epic_id else None
            old_epic_id = task.epic_id
            if old_epic_id == epic_id:
                return task
            task.epic_id = epic_id
            task.touch()
            sync_epic_task_link(tx, task.id, old_epic_id, epic_id)
            recalculate_progress(tx, old_epic_id, actor)
            recalculate_progress(tx, epic_id, actor)
            log_activity(
                tx,
                ActivityType.TASK_UPDATED,
                actor,
                f'Moved "{task.title}" to epic "{new_epic.title}"' if new_epic else f'Removed "{task.title}" from its epic',
                task=task,
                epic=new_epic,
                old_value=old_epic_id,
                new_value=epic_id,
            )
            return task

    def recalculate_epic_progress(self, epic_id: str) -> Epic:
        """Repair membership and recompute progress for one epic."""
        with self.store.transaction() as tx:
            self._epic(tx, epic_id)
            rebuild_membership(tx, epic_id)
            epic = recalculate_progress(tx, epic_id)
            assert epic is not None
            return epic

    def delete_epic(
        self,
        epic_id: str,
        reassign_to: Optional[str] = None,
        actor: Actor = SYSTEM,
        batch_size: Optional[int] = None,
    ) -> MigrationResult:
        with self.store.transaction() as tx:
            return migration_steps.delete_epic(
                tx,
                epic_id,
                reassign_to=reassign_to,
                batch_size=batch_size or self.config.migration_batch_size,
                actor=actor,
            )

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def post_comment(
        self,
        task_id: str,
        content: str,
        sender: Actor = SYSTEM,
        mentions: Optional[list[str]] = None,
        mention_all: bool = False,
        parent_id: Optional[str] = None,
    ) -> Message:
        """Post a comment and fan out its activity, subscriptions and notifications."""
        data = validate_input(
            CommentInput,
            {"content": content, "mentions": mentions or [], "mention_all": mention_all, "parent_id": parent_id},
        )
        with self.store.transaction() as tx:
            self._limit(tx, "post_comment", sender)
            task = self._task(tx, task_id)
            self._require_agents(tx, data.mentions)
            parent = None
            if data.parent_id:
                parent = tx.messages.get(data.parent_id)
                if parent is None or parent.task_id != task_id:
                    raise NotFoundError("Message", data.parent_id, task_id=task_id)

            message = Message(
                task_id=task.id,
                business_id=task.business_id,
                sender=sender,
                sender_name=actor_name(tx, sender),
                content=data.content,
                mentions=list(data.mentions),
                mention_all=data.mention_all,
                parent_id=data.parent_id,
            )
            tx.messages.add(message)
            if parent is not None:
                parent.reply_ids.append(message.id)

            fan_out_comment(
                tx,
                task,
                message,
                sender,
                preview_chars=self.config.preview_chars,
                ttl_seconds=self.config.notification_ttl_seconds,
                now_ms=self._clock(),
            )
            author = tx.agents.get(agent_id_of(sender))
            if author is not None:
                author.bump_metric("comments_made")
        return message

    def list_messages(self, task_id: str) -> list[Message]:
        tx = self.store.read_snapshot()
        self._task(tx, task_id)
        return sorted(tx.messages.filter(lambda m: m.task_id == task_id), key=lambda m: m.created_at)

    def list_subscriptions(self, task_id: str) -> list[ThreadSubscription]:
        return self.store.read_snapshot().subscriptions_for_task(task_id)

    def subscribe_thread(
        self,
        task_id: str,
        actor: Actor,
        level: Union[str, SubscriptionLevel] = SubscriptionLevel.ALL,
    ) -> ThreadSubscription:
        try:
            target = SubscriptionLevel(level)
        except ValueError as exc:
            raise ValidationError(f"Unknown subscription level {level!r}", level=str(level)) from exc
        with self.store.transaction() as tx:
            task = self._task(tx, task_id)
            sub = subscribe(tx, actor, task, target)
            if sub.level != target:
                sub.level = target
            return sub

    def unsubscribe_thread(self, task_id: str, actor: Actor) -> bool:
        with self.store.transaction() as tx:
            self._task(tx, task_id)
            return unsubscribe(tx, actor, task_id)

    # ------------------------------------------------------------------
    # Notifications & activity
    # ------------------------------------------------------------------

    def list_notifications(
        self,
        recipient: Actor,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Notification]:
        items = [
            n
            for n in self.store.read_snapshot().notifications.all()
            if n.recipient.key == recipient.key and not (unread_only and n.read)
        ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit] if limit else items

    def count_unread(self, recipient: Actor) -> int:
        return len(self.list_notifications(recipient, unread_only=True))

    def mark_notification_read(self, notification_id: str) -> Notification:
        with self.store.transaction() as tx:
            notification = tx.notifications.get(notification_id)
            if notification is None:
                raise NotFoundError("Notification", notification_id)
            if not notification.read:
                notification.read = True
                notification.read_at = _now_iso()
            return notification

    def mark_all_read(self, recipient: Actor) -> int:
        with self.store.transaction() as tx:
            count = 0
            stamp = _now_iso()
            for notification in tx.notifications.all():
                if notification.recipient.key == recipient.key and not notification.read:
                    notification.read = True
                    notification.read_at = stamp
                    count += 1
            return count

    def list_activities(
        self,
        business_id: Optional[str] = None,
        task_id: Optional[str] = None,
        epic_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> list[Activity]:
        items = self.store.read_snapshot().activities.all()
        if business_id:
            items = [a for a in items if a.business_id == business_id]
        if task_id:
            items = [a for a in items if a.task_id == task_id]
        if epic_id:
            items = [a for a in items if a.epic_id == epic_id]
        items.reverse()
        return items[:limit] if limit else items

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def register_agent(self, name: str, role: str = "", level: str = AgentLevel.SPECIALIST.value) -> Agent:
        data = validate_input(RegisterAgentInput, {"name": name, "role": role, "level": level})
        with self.store.transaction() as tx:
            agent = Agent(name=data.name, role=data.role, level=data.level, last_heartbeat=self._clock())
            tx.agents.add(agent)
        logger.info("Registered agent %s (%s)", agent.id, agent.name)
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        return self._agent(self.store.read_snapshot(), agent_id)

    def list_agents(self) -> list[Agent]:
        return self.store.read_snapshot().agents.all()

    def heartbeat(self, agent_id: str, current_task_id: Optional[str] = None) -> bool:
        """Record agent liveness.  Returns False, without error, when throttled."""
        with self.store.transaction() as tx:
            agent = self._agent(tx, agent_id)
            rule = self.config.rate_limit_for("heartbeat")
            now = self._clock()
            if rule is not None and not check_rate_limit_silent(
                tx, rate_limit_key("heartbeat", AgentActor(agent_id).key), rule.max_calls, rule.window_ms, now
            ):
                return False
            agent.last_heartbeat = now
            if agent.status == AgentStatus.OFFLINE:
                agent.status = AgentStatus.IDLE
            if current_task_id is not None:
                self._task(tx, current_task_id)
                agent.current_task_id = current_task_id
                agent.status = AgentStatus.ACTIVE
            return True

    # ------------------------------------------------------------------
    # Rate limits & settings
    # ------------------------------------------------------------------

    def get_rate_limit_status(self, operation: str, actor: Actor) -> Optional[RateLimitDecision]:
        rule = self.config.rate_limit_for(operation)
        if rule is None:
            return None
        return get_rate_limit_status(
            self.store.read_snapshot(),
            rate_limit_key(operation, actor.key),
            rule.max_calls,
            rule.window_ms,
            self._clock(),
        )

    def clear_rate_limit(self, operation: str, actor: Actor) -> bool:
        with self.store.transaction() as tx:
            return clear_rate_limit(tx, rate_limit_key(operation, actor.key))

    def set_ticket_prefix(self, business_id: str, prefix: str) -> None:
        prefix = prefix.strip()
        if not prefix:
            raise ValidationError("ticket prefix must not be empty", business_id=business_id)
        with self.store.transaction() as tx:
            set_ticket_prefix(tx, business_id, prefix)

    # ------------------------------------------------------------------
    # Migrations & sweeps
    # ------------------------------------------------------------------

    def run_migration(self, name: str, batch_size: Optional[int] = None, **kwargs: Any) -> MigrationResult:
        """Run one batch of the named migration."""
        size = batch_size or self.config.migration_batch_size
        with self.store.transaction() as tx:
            if name == "migrate_tasks_to_epic":
                return migration_steps.migrate_tasks_to_epic(tx, kwargs.get("epic_id"), batch_size=size)
            if name == "smart_assign_epics":
                return migration_steps.smart_assign_epics(tx, batch_size=size)
            if name == "backfill_ticket_numbers":
                return migration_steps.backfill_ticket_numbers(
                    tx, batch_size=size, default_prefix=self.config.ticket_prefix
                )
            if name == "backfill_thread_subscriptions":
                return migration_steps.backfill_thread_subscriptions(tx, batch_size=size)
        raise ValidationError(f"Unknown migration {name!r}", known=list(MIGRATION_NAMES))

    def migrate_tasks_to_epic(self, epic_id: Optional[str] = None, batch_size: Optional[int] = None) -> MigrationResult:
        return self.run_migration("migrate_tasks_to_epic", batch_size, epic_id=epic_id)

    def smart_assign_epics(self, batch_size: Optional[int] = None) -> MigrationResult:
        return self.run_migration("smart_assign_epics", batch_size)

    def backfill_ticket_numbers(self, batch_size: Optional[int] = None) -> MigrationResult:
        return self.run_migration("backfill_ticket_numbers", batch_size)

    def backfill_thread_subscriptions(self, batch_size: Optional[int] = None) -> MigrationResult:
        return self.run_migration("backfill_thread_subscriptions", batch_size)

    def sweep_expired_notifications(self, now_ms: Optional[int] = None) -> SweepReport:
        with self.store.transaction() as tx:
            return sweeps.sweep_expired_notifications(tx, self._clock() if now_ms is None else now_ms)

    def sweep_stale_agents(self, now_ms: Optional[int] = None) -> SweepReport:
        with self.store.transaction() as tx:
            return sweeps.sweep_stale_agents(
                tx,
                self._clock() if now_ms is None else now_ms,
                stale_after_seconds=self.config.stale_agent_seconds,
            )
