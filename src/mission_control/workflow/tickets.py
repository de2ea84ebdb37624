"""Per-business ticket numbers (``TASK-001``, ``TASK-002``, ...)."""

from __future__ import annotations

from ..constants import DEFAULT_TICKET_PREFIX, TICKET_NUMBER_WIDTH
from .store import WorkflowTx


def counter_key(business_id: str) -> str:
    return f"{business_id}:taskCounter"


def prefix_key(business_id: str) -> str:
    return f"{business_id}:ticketPrefix"


def ticket_prefix(tx: WorkflowTx, business_id: str, default: str = DEFAULT_TICKET_PREFIX) -> str:
    stored = tx.get_setting(prefix_key(business_id))
    if isinstance(stored, dict) and stored.get("value"):
        return str(stored["value"])
    return default


def set_ticket_prefix(tx: WorkflowTx, business_id: str, prefix: str) -> None:
    tx.set_setting(prefix_key(business_id), {"value": prefix})


def format_ticket(prefix: str, number: int) -> str:
    return f"{prefix}-{str(number).zfill(TICKET_NUMBER_WIDTH)}"


def next_ticket_number(tx: WorkflowTx, business_id: str, default_prefix: str = DEFAULT_TICKET_PREFIX) -> str:
    """Increment the business counter and return the formatted ticket number.

    The counter only moves forward, so numbers freed by deleted tasks are
    never handed out again.
    """
    stored = tx.get_setting(counter_key(business_id))
    current = int(stored.get("value", 0)) if isinstance(stored, dict) else 0
    number = current + 1
    tx.set_setting(counter_key(business_id), {"value": number})
    return format_ticket(ticket_prefix(tx, business_id, default_prefix), number)
