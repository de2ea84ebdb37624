"""Typed input models validated at the engine boundary."""

from __future__ import annotations

from typing import Any, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..constants import (
    COMMENT_MAX_LENGTH,
    DESCRIPTION_MAX_LENGTH,
    MAX_TAGS,
    TAG_MAX_LENGTH,
    TITLE_MAX_LENGTH,
)
from ..errors import ValidationError
from .actors import Actor, AgentActor, SystemActor, UserActor
from .model import AgentLevel, EpicStatus, TaskPriority, TaskStatus, TimeEstimate

M = TypeVar("M", bound=BaseModel)


def _clean_tags(tags: list[str]) -> list[str]:
    out: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > TAG_MAX_LENGTH:
            raise ValueError(f"tag {tag[:20]!r}... exceeds {TAG_MAX_LENGTH} characters")
        if tag not in out:
            out.append(tag)
    if len(out) > MAX_TAGS:
        raise ValueError(f"at most {MAX_TAGS} tags allowed")
    return out


def _clean_title(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("title must not be empty")
    return value


def _dedupe(ids: list[str]) -> list[str]:
    out: list[str] = []
    for item in ids:
        if item and item not in out:
            out.append(item)
    return out


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ActorRef(_Input):
    """Serialized actor as accepted over HTTP and the CLI."""

    kind: Literal["user", "system", "agent"] = "user"
    id: Optional[str] = None

    def to_actor(self) -> Actor:
        if self.kind == "agent":
            if not self.id:
                raise ValueError("agent actor requires an id")
            return AgentActor(self.id)
        if self.kind == "system":
            return SystemActor(self.id or "system")
        return UserActor(self.id)


class CreateTaskInput(_Input):
    business_id: str = Field(min_length=1)
    title: str = Field(max_length=TITLE_MAX_LENGTH)
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)
    priority: TaskPriority = TaskPriority.P2
    assignee_ids: list[str] = Field(default_factory=list)
    epic_id: Optional[str] = None
    parent_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    time_estimate: Optional[TimeEstimate] = None
    due_date: Optional[int] = Field(default=None, ge=0)

    @field_validator("title")
    @classmethod
    def check_title(cls, value: str) -> str:
        return _clean_title(value)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value)

    @field_validator("assignee_ids")
    @classmethod
    def check_assignees(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class UpdateTaskInput(_Input):
    title: Optional[str] = Field(default=None, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    tags: Optional[list[str]] = None
    epic_id: Optional[str] = None
    time_estimate: Optional[TimeEstimate] = None
    due_date: Optional[int] = Field(default=None, ge=0)

    @field_validator("title")
    @classmethod
    def check_title(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_title(value)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return None if value is None else _clean_tags(value)


class TagsInput(_Input):
    tags: list[str] = Field(min_length=1)
    action: Literal["add", "remove"] = "add"

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str]) -> list[str]:
        return [t.strip() for t in value if t.strip()]


class CommentInput(_Input):
    content: str = Field(max_length=COMMENT_MAX_LENGTH)
    mentions: list[str] = Field(default_factory=list)
    mention_all: bool = False
    parent_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def check_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value

    @field_validator("mentions")
    @classmethod
    def check_mentions(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class CreateEpicInput(_Input):
    business_id: str = Field(min_length=1)
    title: str = Field(max_length=TITLE_MAX_LENGTH)
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)
    owner_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def check_title(cls, value: str) -> str:
        return _clean_title(value)


class UpdateEpicInput(_Input):
    title: Optional[str] = Field(default=None, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    status: Optional[EpicStatus] = None

    @field_validator("title")
    @classmethod
    def check_title(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_title(value)


class RegisterAgentInput(_Input):
    name: str = Field(min_length=1, max_length=100)
    role: str = Field(default="", max_length=100)
    level: AgentLevel = AgentLevel.SPECIALIST


def validate_input(model_cls: type[M], data: Any) -> M:
    """Parse *data* into *model_cls*, raising our :class:`ValidationError` on failure."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err.get('loc', ())) or 'input'}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        ]
        raise ValidationError(
            f"Invalid {model_cls.__name__}: {'; '.join(errors)}",
            errors=errors,
        ) from exc
