"""Actors: who performs a mutation or receives a notification.

An actor is a tagged union: a human user (possibly anonymous), an autonomous
agent, or the system itself. Identity comparisons use ``actor.key``; display
names come from :func:`resolve_actor_name`, which dispatches on the tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Optional, Union

SYSTEM_DISPLAY_NAME = "Mission Control"


@dataclass(frozen=True)
class UserActor:
    """A human user.  ``user_id=None`` is the anonymous dashboard user."""

    user_id: Optional[str] = None
    kind: ClassVar[str] = "user"

    @property
    def key(self) -> str:
        return f"user:{self.user_id}" if self.user_id else "user"

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


@dataclass(frozen=True)
class SystemActor:
    """The system itself, optionally labelled with the subsystem acting."""

    label: str = "system"
    kind: ClassVar[str] = "system"

    @property
    def key(self) -> str:
        return "system" if self.label == "system" else f"system:{self.label}"


@dataclass(frozen=True)
class AgentActor:
    agent_id: str
    kind: ClassVar[str] = "agent"

    @property
    def key(self) -> str:
        return f"agent:{self.agent_id}"


Actor = Union[UserActor, SystemActor, AgentActor]

SYSTEM = SystemActor()


def actor_to_dict(actor: Actor) -> dict[str, Any]:
    if isinstance(actor, AgentActor):
        return {"kind": "agent", "id": actor.agent_id}
    if isinstance(actor, SystemActor):
        return {"kind": "system", "id": actor.label}
    return {"kind": "user", "id": actor.user_id}


def actor_from_dict(data: Any) -> Actor:
    """Rebuild an actor from its serialized form; unknown shapes become SYSTEM."""
    if not isinstance(data, dict):
        return SYSTEM
    kind = data.get("kind")
    ident = data.get("id")
    if kind == "agent" and ident:
        return AgentActor(str(ident))
    if kind == "user":
        return UserActor(str(ident) if ident else None)
    if kind == "system":
        return SystemActor(str(ident) if ident else "system")
    return SYSTEM


def agent_id_of(actor: Actor) -> Optional[str]:
    return actor.agent_id if isinstance(actor, AgentActor) else None


def resolve_actor_name(actor: Actor, agent_names: Mapping[str, str]) -> str:
    """Return a display name for *actor*.

    ``agent_names`` maps agent id to agent name; agents missing from it fall
    back to their id.
    """
    if isinstance(actor, AgentActor):
        return agent_names.get(actor.agent_id, actor.agent_id)
    if isinstance(actor, SystemActor):
        if actor.label == "system":
            return SYSTEM_DISPLAY_NAME
        return f"{SYSTEM_DISPLAY_NAME} ({actor.label})"
    return actor.user_id or "User"
