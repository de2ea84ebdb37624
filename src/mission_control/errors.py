"""Error kinds surfaced by the workflow engine.

Every error carries a ``context`` mapping (entity ids, attempted values) so the
HTTP layer and the CLI can render a precise message without re-reading state.
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": dict(self.context)}


class NotFoundError(WorkflowError, LookupError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: str, **context: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id, **context)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(WorkflowError, ValueError):
    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class InvalidTransitionError(WorkflowError, ValueError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, task_id: str, from_status: str, to_status: str, allowed: list[str]) -> None:
        super().__init__(
            f"Invalid transition for {task_id}: {from_status} -> {to_status}. "
            f"Allowed: {', '.join(allowed) or 'none'}",
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            allowed=list(allowed),
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = list(allowed)


class CircularDependencyError(WorkflowError, ValueError):
    status_code = 409
    code = "circular_dependency"

    def __init__(self, task_id: str, blocker_id: str) -> None:
        super().__init__(
            f"Adding {blocker_id} as a blocker of {task_id} would create a circular dependency",
            task_id=task_id,
            blocker_id=blocker_id,
        )
        self.task_id = task_id
        self.blocker_id = blocker_id


class UnauthorizedError(WorkflowError, PermissionError):
    status_code = 403
    code = "unauthorized"


class RateLimitExceededError(WorkflowError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, key: str, max_calls: int, window_ms: int, reset_at: int) -> None:
        super().__init__(
            f"Rate limit exceeded. Max {max_calls} calls per {window_ms / 1000:g}s",
            key=key,
            max_calls=max_calls,
            window_ms=window_ms,
            reset_at=reset_at,
        )
        self.key = key
        self.reset_at = reset_at


class StoreCorruptedError(WorkflowError):
    """The on-disk store could not be parsed; it is left untouched."""

    status_code = 500
    code = "store_corrupted"
