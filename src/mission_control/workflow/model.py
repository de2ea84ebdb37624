"""Domain records for the workflow engine.

Tasks, epics, agents, comments, notifications, activities and thread
subscriptions.  Every record is a plain dataclass that round-trips through
``to_dict()`` / ``from_dict()`` for YAML persistence; ``from_dict`` coerces
unknown enum values to a safe default instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar

from ..utils import _generate_id, _now_iso
from .actors import SYSTEM, Actor, actor_from_dict, actor_to_dict


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Board-level status used for Kanban columns."""

    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    DONE = "done"


class TaskPriority(str, Enum):
    """Priority level; P0 is most urgent."""

    P0 = "P0"  # Critical / drop everything
    P1 = "P1"  # High
    P2 = "P2"  # Medium (default)
    P3 = "P3"  # Low / nice-to-have

    @property
    def sort_key(self) -> int:
        return {"P0": 0, "P1": 1, "P2": 2, "P3": 3}[self.value]


class TimeEstimate(str, Enum):
    """T-shirt size effort estimate."""

    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class EpicStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"


class AgentLevel(str, Enum):
    LEAD = "lead"
    SPECIALIST = "specialist"
    INTERN = "intern"


class AgentStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    BLOCKED = "blocked"
    OFFLINE = "offline"


class NotificationType(str, Enum):
    MENTION = "mention"
    ASSIGNMENT = "assignment"
    COMMENT = "comment"
    STATUS_CHANGE = "status_change"
    DEPENDENCY_UNBLOCKED = "dependency_unblocked"


class ActivityType(str, Enum):
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_BLOCKED = "task_blocked"
    TASK_DELETED = "task_deleted"
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_REMOVED = "dependency_removed"
    COMMENT_ADDED = "comment_added"
    MENTION = "mention"
    EPIC_CREATED = "epic_created"
    EPIC_UPDATED = "epic_updated"
    EPIC_COMPLETED = "epic_completed"
    EPIC_DELETED = "epic_deleted"
    MIGRATION = "migration"


class SubscriptionLevel(str, Enum):
    ALL = "all"
    MENTIONS = "mentions"


E = TypeVar("E", bound=Enum)


def _enum(enum_cls: type[E], raw: Any, default: E) -> E:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _opt_enum(enum_cls: type[E], raw: Any) -> Optional[E]:
    if raw is None:
        return None
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return None


def _str_list(raw: Any) -> list[str]:
    return [str(item) for item in (raw or [])]


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work on the board, owned by one business (tenant)."""

    # Identity
    id: str = field(default_factory=lambda: _generate_id("task"))
    business_id: str = ""
    title: str = ""
    description: str = ""
    ticket_number: Optional[str] = None

    # Classification
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.P2
    tags: list[str] = field(default_factory=list)
    time_estimate: Optional[TimeEstimate] = None
    due_date: Optional[int] = None  # epoch ms

    # Hierarchy
    epic_id: Optional[str] = None
    parent_id: Optional[str] = None
    subtask_ids: list[str] = field(default_factory=list)

    # Dependencies
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    # Assignment
    assignee_ids: list[str] = field(default_factory=list)

    # Provenance
    created_by: Actor = SYSTEM
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "title": self.title,
            "description": self.description,
            "ticket_number": self.ticket_number,
            "status": self.status.value,
            "priority": self.priority.value,
            "tags": list(self.tags),
            "time_estimate": self.time_estimate.value if self.time_estimate else None,
            "due_date": self.due_date,
            "epic_id": self.epic_id,
            "parent_id": self.parent_id,
            "subtask_ids": list(self.subtask_ids),
            "blocked_by": list(self.blocked_by),
            "blocks": list(self.blocks),
            "assignee_ids": list(self.assignee_ids),
            "created_by": actor_to_dict(self.created_by),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        due = data.get("due_date")
        return cls(
            id=str(data.get("id") or _generate_id("task")),
            business_id=str(data.get("business_id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            ticket_number=data.get("ticket_number"),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.BACKLOG),
            priority=_enum(TaskPriority, data.get("priority"), TaskPriority.P2),
            tags=_str_list(data.get("tags")),
            time_estimate=_opt_enum(TimeEstimate, data.get("time_estimate")),
            due_date=int(due) if due is not None else None,
            epic_id=data.get("epic_id"),
            parent_id=data.get("parent_id"),
            subtask_ids=_str_list(data.get("subtask_ids")),
            blocked_by=_str_list(data.get("blocked_by")),
            blocks=_str_list(data.get("blocks")),
            assignee_ids=_str_list(data.get("assignee_ids")),
            created_by=actor_from_dict(data.get("created_by")),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.DONE

    @property
    def display_ref(self) -> str:
        """Human-readable reference used in activity and notification text."""
        if self.ticket_number:
            return f"{self.ticket_number} {self.title}"
        return self.title

    def add_blocked_by(self, task_id: str) -> None:
        if task_id not in self.blocked_by:
            self.blocked_by.append(task_id)
            self.touch()

    def remove_blocked_by(self, task_id: str) -> None:
        if task_id in self.blocked_by:
            self.blocked_by.remove(task_id)
            self.touch()

    def add_blocks(self, task_id: str) -> None:
        if task_id not in self.blocks:
            self.blocks.append(task_id)
            self.touch()

    def remove_blocks(self, task_id: str) -> None:
        if task_id in self.blocks:
            self.blocks.remove(task_id)
            self.touch()


# ---------------------------------------------------------------------------
# Epic
# ---------------------------------------------------------------------------

@dataclass
class Epic:
    id: str = field(default_factory=lambda: _generate_id("epic"))
    business_id: str = ""
    title: str = ""
    description: str = ""
    status: EpicStatus = EpicStatus.PLANNING
    progress: int = 0
    task_ids: list[str] = field(default_factory=list)
    owner_id: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
            "task_ids": list(self.task_ids),
            "owner_id": self.owner_id,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Epic":
        return cls(
            id=str(data.get("id") or _generate_id("epic")),
            business_id=str(data.get("business_id") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=_enum(EpicStatus, data.get("status"), EpicStatus.PLANNING),
            progress=int(data.get("progress") or 0),
            task_ids=_str_list(data.get("task_ids")),
            owner_id=data.get("owner_id"),
            completed_at=data.get("completed_at"),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )

    def touch(self) -> None:
        self.updated_at = _now_iso()


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

def _empty_metrics() -> dict[str, int]:
    return {"tasks_created": 0, "tasks_completed": 0, "tasks_blocked": 0, "comments_made": 0}


@dataclass
class Agent:
    """An autonomous actor on the roster, with role, skill level and metrics."""

    id: str = field(default_factory=lambda: _generate_id("agent"))
    name: str = ""
    role: str = ""
    level: AgentLevel = AgentLevel.SPECIALIST
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: Optional[str] = None
    last_heartbeat: Optional[int] = None  # epoch ms
    metrics: dict[str, int] = field(default_factory=_empty_metrics)
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "level": self.level.value,
            "status": self.status.value,
            "current_task_id": self.current_task_id,
            "last_heartbeat": self.last_heartbeat,
            "metrics": dict(self.metrics),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        metrics = _empty_metrics()
        for key, value in dict(data.get("metrics") or {}).items():
            try:
                metrics[str(key)] = int(value)
            except (TypeError, ValueError):
                continue
        heartbeat = data.get("last_heartbeat")
        return cls(
            id=str(data.get("id") or _generate_id("agent")),
            name=str(data.get("name") or ""),
            role=str(data.get("role") or ""),
            level=_enum(AgentLevel, data.get("level"), AgentLevel.SPECIALIST),
            status=_enum(AgentStatus, data.get("status"), AgentStatus.IDLE),
            current_task_id=data.get("current_task_id"),
            last_heartbeat=int(heartbeat) if heartbeat is not None else None,
            metrics=metrics,
            created_at=str(data.get("created_at") or _now_iso()),
        )

    def bump_metric(self, name: str, amount: int = 1) -> None:
        self.metrics[name] = int(self.metrics.get(name, 0)) + amount


# ---------------------------------------------------------------------------
# Comments, notifications, activities, subscriptions
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """A comment posted on a task thread."""

    id: str = field(default_factory=lambda: _generate_id("msg"))
    task_id: str = ""
    business_id: str = ""
    sender: Actor = SYSTEM
    sender_name: str = ""
    content: str = ""
    mentions: list[str] = field(default_factory=list)  # agent ids
    mention_all: bool = False
    parent_id: Optional[str] = None
    reply_ids: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "business_id": self.business_id,
            "sender": actor_to_dict(self.sender),
            "sender_name": self.sender_name,
            "content": self.content,
            "mentions": list(self.mentions),
            "mention_all": self.mention_all,
            "parent_id": self.parent_id,
            "reply_ids": list(self.reply_ids),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("id") or _generate_id("msg")),
            task_id=str(data.get("task_id") or ""),
            business_id=str(data.get("business_id") or ""),
            sender=actor_from_dict(data.get("sender")),
            sender_name=str(data.get("sender_name") or ""),
            content=str(data.get("content") or ""),
            mentions=_str_list(data.get("mentions")),
            mention_all=bool(data.get("mention_all", False)),
            parent_id=data.get("parent_id"),
            reply_ids=_str_list(data.get("reply_ids")),
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass
class Notification:
    id: str = field(default_factory=lambda: _generate_id("notif"))
    recipient: Actor = SYSTEM
    type: NotificationType = NotificationType.STATUS_CHANGE
    content: str = ""
    from_actor: Optional[Actor] = None
    from_name: Optional[str] = None
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    message_id: Optional[str] = None
    read: bool = False
    read_at: Optional[str] = None
    expires_at: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recipient": actor_to_dict(self.recipient),
            "type": self.type.value,
            "content": self.content,
            "from_actor": actor_to_dict(self.from_actor) if self.from_actor else None,
            "from_name": self.from_name,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "message_id": self.message_id,
            "read": self.read,
            "read_at": self.read_at,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        raw_from = data.get("from_actor")
        return cls(
            id=str(data.get("id") or _generate_id("notif")),
            recipient=actor_from_dict(data.get("recipient")),
            type=_enum(NotificationType, data.get("type"), NotificationType.STATUS_CHANGE),
            content=str(data.get("content") or ""),
            from_actor=actor_from_dict(raw_from) if raw_from else None,
            from_name=data.get("from_name"),
            task_id=data.get("task_id"),
            task_title=data.get("task_title"),
            message_id=data.get("message_id"),
            read=bool(data.get("read", False)),
            read_at=data.get("read_at"),
            expires_at=data.get("expires_at"),
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass(frozen=True)
class Activity:
    """Append-only audit entry; never mutated after it is recorded."""

    id: str = field(default_factory=lambda: _generate_id("act"))
    business_id: Optional[str] = None
    type: ActivityType = ActivityType.TASK_UPDATED
    actor: Actor = SYSTEM
    actor_name: str = ""
    message: str = ""
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    ticket_number: Optional[str] = None
    epic_id: Optional[str] = None
    epic_title: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "type": self.type.value,
            "actor": actor_to_dict(self.actor),
            "actor_name": self.actor_name,
            "message": self.message,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "ticket_number": self.ticket_number,
            "epic_id": self.epic_id,
            "epic_title": self.epic_title,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Activity":
        return cls(
            id=str(data.get("id") or _generate_id("act")),
            business_id=data.get("business_id"),
            type=_enum(ActivityType, data.get("type"), ActivityType.TASK_UPDATED),
            actor=actor_from_dict(data.get("actor")),
            actor_name=str(data.get("actor_name") or ""),
            message=str(data.get("message") or ""),
            task_id=data.get("task_id"),
            task_title=data.get("task_title"),
            ticket_number=data.get("ticket_number"),
            epic_id=data.get("epic_id"),
            epic_title=data.get("epic_title"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            created_at=str(data.get("created_at") or _now_iso()),
        )


@dataclass
class ThreadSubscription:
    id: str = field(default_factory=lambda: _generate_id("sub"))
    actor: Actor = SYSTEM
    task_id: str = ""
    business_id: str = ""
    level: SubscriptionLevel = SubscriptionLevel.ALL
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "actor": actor_to_dict(self.actor),
            "task_id": self.task_id,
            "business_id": self.business_id,
            "level": self.level.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThreadSubscription":
        return cls(
            id=str(data.get("id") or _generate_id("sub")),
            actor=actor_from_dict(data.get("actor")),
            task_id=str(data.get("task_id") or ""),
            business_id=str(data.get("business_id") or ""),
            level=_enum(SubscriptionLevel, data.get("level"), SubscriptionLevel.ALL),
            created_at=str(data.get("created_at") or _now_iso()),
        )
