"""Workflow API endpoints for the Mission Control board.

This module provides a FastAPI router over :class:`WorkflowEngine`: task CRUD,
status transitions, dependencies, assignment, epics, comments, notifications,
agents, migrations and sweeps.  It is mounted under ``/api/workflow`` by the
``create_app`` factory.

Engine errors propagate as :class:`WorkflowError`; the app-level exception
handler turns them into JSON responses with the matching status code.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..workflow.actors import Actor
from ..workflow.engine import WorkflowEngine
from ..workflow.schemas import (
    ActorRef,
    CommentInput,
    CreateEpicInput,
    CreateTaskInput,
    RegisterAgentInput,
    TagsInput,
    UpdateEpicInput,
    UpdateTaskInput,
)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class StatusRequest(BaseModel):
    status: str


class AssignRequest(BaseModel):
    assignee_ids: list[str]


class DependencyRequest(BaseModel):
    blocker_id: str


class SubtaskRequest(BaseModel):
    title: str
    description: str = ""
    priority: Optional[str] = None


class EpicLinkRequest(BaseModel):
    epic_id: Optional[str] = None


class SubscribeRequest(BaseModel):
    level: Literal["all", "mentions"] = "all"


class HeartbeatRequest(BaseModel):
    current_task_id: Optional[str] = None


class TicketPrefixRequest(BaseModel):
    prefix: str


class TaskResponse(BaseModel):
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class DependencyResponse(BaseModel):
    task_id: str
    dependencies: list[str]
    dependents: list[str]
    critical_path: list[str]
    graph: dict[str, list[str]]


class ExecutionOrderResponse(BaseModel):
    batches: list[list[str]]


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_workflow_router(get_engine: Any) -> APIRouter:
    """Create the workflow API router.

    Parameters
    ----------
    get_engine:
        A callable ``(project_dir_param: str | None) -> WorkflowEngine`` that
        resolves the engine for the current request's project directory.
    """
    router = APIRouter(prefix="/api/workflow", tags=["workflow"])

    def _actor(actor_kind: str, actor_id: Optional[str]) -> Actor:
        try:
            return ActorRef(kind=actor_kind, id=actor_id).to_actor()
        except ValueError as exc:
            raise ValidationError(f"Invalid actor: {exc}", actor_kind=actor_kind) from exc

    def _engine(project_dir: Optional[str]) -> WorkflowEngine:
        return get_engine(project_dir)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @router.get("/tasks", response_model=TaskListResponse)
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        business_id: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        priority: Optional[str] = Query(None),
        assignee_id: Optional[str] = Query(None),
        epic_id: Optional[str] = Query(None),
        tag: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
    ) -> TaskListResponse:
        tasks = _engine(project_dir).list_tasks(
            business_id=business_id,
            status=status,
            priority=priority,
            assignee_id=assignee_id,
            epic_id=epic_id,
            tag=tag,
            search=search,
        )
        data = [t.to_dict() for t in tasks]
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("/tasks", response_model=TaskResponse, status_code=201)
    async def create_task(
        body: CreateTaskInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).create_task(**body.model_dump(), created_by=_actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        return TaskResponse(task=_engine(project_dir).get_task(task_id).to_dict())

    @router.patch("/tasks/{task_id}", response_model=TaskResponse)
    async def update_task(
        task_id: str,
        body: UpdateTaskInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).update_task(task_id, body, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.delete("/tasks/{task_id}")
    async def delete_task(
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, str]:
        _engine(project_dir).delete_task(task_id, _actor(actor_kind, actor_id))
        return {"status": "deleted", "task_id": task_id}

    @router.post("/tasks/{task_id}/status", response_model=TaskResponse)
    async def update_status(
        task_id: str,
        body: StatusRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).update_status(task_id, body.status, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.post("/tasks/{task_id}/subtasks", response_model=TaskResponse, status_code=201)
    async def create_subtask(
        task_id: str,
        body: SubtaskRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).create_subtask(
            task_id,
            body.title,
            created_by=_actor(actor_kind, actor_id),
            description=body.description,
            priority=body.priority,
        )
        return TaskResponse(task=task.to_dict())

    @router.post("/tasks/{task_id}/tags", response_model=TaskResponse)
    async def update_tags(
        task_id: str,
        body: TagsInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).add_tags(task_id, body.tags, body.action, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.put("/tasks/{task_id}/epic", response_model=TaskResponse)
    async def assign_epic(
        task_id: str,
        body: EpicLinkRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).assign_epic(task_id, body.epic_id, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    @router.post("/tasks/{task_id}/assign", response_model=TaskResponse)
    async def assign(
        task_id: str,
        body: AssignRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).assign(task_id, body.assignee_ids, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.post("/tasks/{task_id}/unassign", response_model=TaskResponse)
    async def unassign(
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).unassign(task_id, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.post("/tasks/{task_id}/smart-assign")
    async def smart_assign(
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("system"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        return _engine(project_dir).smart_assign(task_id, _actor(actor_kind, actor_id)).to_dict()

    @router.post("/assign/backlog")
    async def auto_assign_backlog(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(10, ge=1, le=100),
    ) -> dict[str, Any]:
        report = _engine(project_dir).auto_assign_backlog(limit)
        logger.info("Backlog auto-assign via API: {} of {} assigned", report.assigned, report.processed)
        return report.to_dict()

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    @router.get("/tasks/{task_id}/dependencies", response_model=DependencyResponse)
    async def get_dependencies(task_id: str, project_dir: Optional[str] = Query(None)) -> DependencyResponse:
        engine = _engine(project_dir)
        return DependencyResponse(
            task_id=task_id,
            dependencies=engine.get_transitive_dependencies(task_id),
            dependents=engine.get_transitive_dependents(task_id),
            critical_path=engine.get_critical_path(task_id),
            graph=engine.get_dependency_graph(task_id),
        )

    @router.post("/tasks/{task_id}/dependencies", response_model=TaskResponse)
    async def add_dependency(
        task_id: str,
        body: DependencyRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).add_dependency(task_id, body.blocker_id, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.delete("/tasks/{task_id}/dependencies/{blocker_id}", response_model=TaskResponse)
    async def remove_dependency(
        task_id: str,
        blocker_id: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> TaskResponse:
        task = _engine(project_dir).remove_dependency(task_id, blocker_id, _actor(actor_kind, actor_id))
        return TaskResponse(task=task.to_dict())

    @router.get("/execution-order", response_model=ExecutionOrderResponse)
    async def get_execution_order(
        project_dir: Optional[str] = Query(None),
        business_id: Optional[str] = Query(None),
    ) -> ExecutionOrderResponse:
        return ExecutionOrderResponse(batches=_engine(project_dir).get_execution_order(business_id))

    @router.get("/meta/state-machine")
    async def get_state_machine(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return _engine(project_dir).describe_state_machine()

    # ------------------------------------------------------------------
    # Comments & subscriptions
    # ------------------------------------------------------------------

    @router.get("/tasks/{task_id}/comments")
    async def list_comments(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        messages = _engine(project_dir).list_messages(task_id)
        return {"messages": [m.to_dict() for m in messages], "total": len(messages)}

    @router.post("/tasks/{task_id}/comments", status_code=201)
    async def post_comment(
        task_id: str,
        body: CommentInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        message = _engine(project_dir).post_comment(
            task_id,
            body.content,
            _actor(actor_kind, actor_id),
            mentions=body.mentions,
            mention_all=body.mention_all,
            parent_id=body.parent_id,
        )
        return {"message": message.to_dict()}

    @router.get("/tasks/{task_id}/subscriptions")
    async def list_subscriptions(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        subs = _engine(project_dir).list_subscriptions(task_id)
        return {"subscriptions": [s.to_dict() for s in subs]}

    @router.post("/tasks/{task_id}/subscribe")
    async def subscribe_thread(
        task_id: str,
        body: SubscribeRequest,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        sub = _engine(project_dir).subscribe_thread(task_id, _actor(actor_kind, actor_id), body.level)
        return {"subscription": sub.to_dict()}

    @router.delete("/tasks/{task_id}/subscribe")
    async def unsubscribe_thread(
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        removed = _engine(project_dir).unsubscribe_thread(task_id, _actor(actor_kind, actor_id))
        return {"removed": removed}

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    @router.get("/epics")
    async def list_epics(
        project_dir: Optional[str] = Query(None),
        business_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        epics = _engine(project_dir).list_epics(business_id)
        return {"epics": [e.to_dict() for e in epics], "total": len(epics)}

    @router.post("/epics", status_code=201)
    async def create_epic(
        body: CreateEpicInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        epic = _engine(project_dir).create_epic(**body.model_dump(), actor=_actor(actor_kind, actor_id))
        return {"epic": epic.to_dict()}

    @router.get("/epics/{epic_id}")
    async def get_epic(epic_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        epic, tasks = _engine(project_dir).get_epic_with_tasks(epic_id)
        return {"epic": epic.to_dict(), "tasks": [t.to_dict() for t in tasks]}

    @router.patch("/epics/{epic_id}")
    async def update_epic(
        epic_id: str,
        body: UpdateEpicInput,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        epic = _engine(project_dir).update_epic(epic_id, body, _actor(actor_kind, actor_id))
        return {"epic": epic.to_dict()}

    @router.post("/epics/{epic_id}/recalculate")
    async def recalculate_epic(epic_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return {"epic": _engine(project_dir).recalculate_epic_progress(epic_id).to_dict()}

    @router.delete("/epics/{epic_id}")
    async def delete_epic(
        epic_id: str,
        project_dir: Optional[str] = Query(None),
        reassign_to: Optional[str] = Query(None),
        batch_size: Optional[int] = Query(None, ge=1),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        result = _engine(project_dir).delete_epic(
            epic_id,
            reassign_to=reassign_to,
            actor=_actor(actor_kind, actor_id),
            batch_size=batch_size,
        )
        return result.to_dict()

    @router.put("/businesses/{business_id}/ticket-prefix")
    async def set_ticket_prefix(
        business_id: str,
        body: TicketPrefixRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, str]:
        _engine(project_dir).set_ticket_prefix(business_id, body.prefix)
        return {"business_id": business_id, "prefix": body.prefix.strip()}

    # ------------------------------------------------------------------
    # Notifications & activity
    # ------------------------------------------------------------------

    @router.get("/notifications")
    async def list_notifications(
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
        unread_only: bool = Query(False),
        limit: Optional[int] = Query(None, ge=1),
    ) -> dict[str, Any]:
        items = _engine(project_dir).list_notifications(_actor(actor_kind, actor_id), unread_only, limit)
        return {"notifications": [n.to_dict() for n in items], "total": len(items)}

    @router.get("/notifications/unread-count")
    async def unread_count(
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, int]:
        return {"unread": _engine(project_dir).count_unread(_actor(actor_kind, actor_id))}

    @router.post("/notifications/read-all")
    async def mark_all_read(
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, int]:
        return {"marked": _engine(project_dir).mark_all_read(_actor(actor_kind, actor_id))}

    @router.post("/notifications/{notification_id}/read")
    async def mark_read(notification_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return {"notification": _engine(project_dir).mark_notification_read(notification_id).to_dict()}

    @router.get("/activities")
    async def list_activities(
        project_dir: Optional[str] = Query(None),
        business_id: Optional[str] = Query(None),
        task_id: Optional[str] = Query(None),
        epic_id: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
    ) -> dict[str, Any]:
        items = _engine(project_dir).list_activities(business_id, task_id, epic_id, limit)
        return {"activities": [a.to_dict() for a in items], "total": len(items)}

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @router.get("/agents")
    async def list_agents(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        agents = _engine(project_dir).list_agents()
        return {"agents": [a.to_dict() for a in agents], "total": len(agents)}

    @router.post("/agents", status_code=201)
    async def register_agent(body: RegisterAgentInput, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        agent = _engine(project_dir).register_agent(body.name, body.role, body.level.value)
        return {"agent": agent.to_dict()}

    @router.post("/agents/{agent_id}/heartbeat")
    async def heartbeat(
        agent_id: str,
        body: HeartbeatRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, bool]:
        return {"recorded": _engine(project_dir).heartbeat(agent_id, body.current_task_id)}

    # ------------------------------------------------------------------
    # Rate limits, migrations & sweeps
    # ------------------------------------------------------------------

    @router.get("/rate-limits/{operation}")
    async def rate_limit_status(
        operation: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        decision = _engine(project_dir).get_rate_limit_status(operation, _actor(actor_kind, actor_id))
        return {"operation": operation, "limit": decision.to_dict() if decision else None}

    @router.delete("/rate-limits/{operation}")
    async def clear_rate_limit(
        operation: str,
        project_dir: Optional[str] = Query(None),
        actor_kind: str = Query("user"),
        actor_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        cleared = _engine(project_dir).clear_rate_limit(operation, _actor(actor_kind, actor_id))
        return {"operation": operation, "cleared": cleared}

    @router.post("/migrations/{name}")
    async def run_migration(
        name: str,
        project_dir: Optional[str] = Query(None),
        batch_size: Optional[int] = Query(None, ge=1),
        epic_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        result = _engine(project_dir).run_migration(name, batch_size, epic_id=epic_id)
        logger.info("Migration {} via API: processed={} remaining={}", name, result.processed, result.remaining)
        return result.to_dict()

    @router.post("/sweeps/notifications")
    async def sweep_notifications(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return _engine(project_dir).sweep_expired_notifications().to_dict()

    @router.post("/sweeps/agents")
    async def sweep_agents(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        return _engine(project_dir).sweep_stale_agents().to_dict()

    return router
