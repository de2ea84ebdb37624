"""Batched, resumable backfills.

Every migration is a :class:`MigrationStep`: a candidate scan, a predicate
that says whether a record still needs work, and a transform.  One run
touches at most ``batch_size`` records and reports how many are left, so the
caller re-invokes until ``remaining == 0``.  Records that already satisfy the
target shape are never picked again, which makes re-runs harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from ..constants import (
    DEFAULT_MIGRATION_BATCH_SIZE,
    DEFAULT_TICKET_PREFIX,
    GENERAL_EPIC_DESCRIPTION,
    GENERAL_EPIC_TITLE,
)
from ..errors import NotFoundError, ValidationError
from .actors import SYSTEM, Actor, AgentActor
from .epics import recalculate_progress, sync_epic_task_link
from .fanout import actor_name, log_activity, subscribe
from .model import ActivityType, Epic, EpicStatus, Task
from .store import WorkflowTx
from .tickets import next_ticket_number

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class MigrationResult:
    name: str
    processed: int = 0
    remaining: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "processed": self.processed,
            "remaining": self.remaining,
            "failed": self.failed,
            "errors": list(self.errors),
            **self.details,
        }


@dataclass
class MigrationStep(Generic[R]):
    name: str
    candidates: Callable[[WorkflowTx], list[R]]
    predicate: Callable[[WorkflowTx, R], bool]
    transform: Callable[[WorkflowTx, R], None]
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE
    describe: Callable[[R], str] = field(default=lambda record: getattr(record, "id", repr(record)))

    def run(self, tx: WorkflowTx) -> MigrationResult:
        if self.batch_size < 1:
            raise ValidationError("batch_size must be at least 1", batch_size=self.batch_size)
        pending = [r for r in self.candidates(tx) if self.predicate(tx, r)]
        batch = pending[: self.batch_size]
        result = MigrationResult(name=self.name)
        for record in batch:
            try:
                self.transform(tx, record)
                result.processed += 1
            except Exception as exc:
                # One bad record must not abort the batch.
                result.failed += 1
                result.errors.append(f"{self.describe(record)}: {exc}")
                logger.warning("Migration %s skipped %s: %s", self.name, self.describe(record), exc)
        # Failed records still match the predicate and are picked up next run.
        result.remaining = len(pending) - result.processed
        logger.info(
            "Migration %s: processed=%d failed=%d remaining=%d",
            self.name,
            result.processed,
            result.failed,
            result.remaining,
        )
        return result


def _orphans(tx: WorkflowTx) -> list[Task]:
    return sorted(tx.tasks.filter(lambda t: not t.epic_id), key=lambda t: t.created_at)


def _summarize(tx: WorkflowTx, result: MigrationResult, actor: Actor, message: str) -> None:
    if result.processed:
        log_activity(tx, ActivityType.MIGRATION, actor, message)


# ---------------------------------------------------------------------------
# Orphaned tasks -> epic
# ---------------------------------------------------------------------------

def find_general_epic(tx: WorkflowTx, business_id: str = "") -> Optional[Epic]:
    for epic in tx.epics.all():
        if epic.business_id != business_id:
            continue
        if epic.title.strip().lower() in {GENERAL_EPIC_TITLE.lower(), "general"}:
            return epic
    return None


def ensure_general_epic(tx: WorkflowTx, business_id: str = "") -> Epic:
    existing = find_general_epic(tx, business_id)
    if existing is not None:
        return existing
    lead = next(iter(tx.agents.all()), None)
    epic = Epic(
        business_id=business_id,
        title=GENERAL_EPIC_TITLE,
        description=GENERAL_EPIC_DESCRIPTION,
        status=EpicStatus.ACTIVE,
        owner_id=lead.id if lead else None,
    )
    tx.epics.add(epic)
    log_activity(tx, ActivityType.EPIC_CREATED, SYSTEM, f"Created epic: {epic.title}", epic=epic)
    logger.info("Created catch-all epic %s for business %r", epic.id, business_id)
    return epic


def migrate_tasks_to_epic(
    tx: WorkflowTx,
    epic_id: Optional[str] = None,
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
    actor: Actor = SYSTEM,
) -> MigrationResult:
    """Attach orphaned tasks to *epic_id*, or to their business's "General Tasks" catch-all.

    An explicit target only collects orphans from its own business.
    """
    target: Optional[Epic] = None
    if epic_id:
        target = tx.epics.get(epic_id)
        if target is None:
            raise NotFoundError("Epic", epic_id)

    def _candidates(tx: WorkflowTx) -> list[Task]:
        orphans = _orphans(tx)
        if target is not None:
            return [t for t in orphans if t.business_id == target.business_id]
        return orphans

    touched: dict[str, Epic] = {}

    def _attach(tx: WorkflowTx, task: Task) -> None:
        epic = target if target is not None else ensure_general_epic(tx, task.business_id)
        task.epic_id = epic.id
        task.touch()
        sync_epic_task_link(tx, task.id, None, epic.id)
        touched[epic.business_id] = epic

    step = MigrationStep(
        name="migrate_tasks_to_epic",
        candidates=_candidates,
        predicate=lambda tx, t: not t.epic_id,
        transform=_attach,
        batch_size=batch_size,
    )
    result = step.run(tx)
    for epic in touched.values():
        recalculate_progress(tx, epic.id, actor)

    if target is None and len(touched) == 1:
        target = next(iter(touched.values()))
    result.details = {
        "epic_id": target.id if target else None,
        "epic_title": target.title if target else GENERAL_EPIC_TITLE,
        "epics": {business: epic.id for business, epic in touched.items()},
    }
    title = target.title if target else GENERAL_EPIC_TITLE
    _summarize(tx, result, actor, f'Migrated {result.processed} tasks without epic to "{title}"')
    return result


# ---------------------------------------------------------------------------
# Content-based epic matching
# ---------------------------------------------------------------------------

EPIC_KEYWORDS: dict[str, list[str]] = {
    "marketing": ["marketing", "campaign", "promotion", "social media", "ads", "advertising", "content", "blog", "seo"],
    "content": ["content", "blog", "article", "writing", "copy", "documentation", "guide", "tutorial"],
    "seo": ["seo", "search", "keywords", "ranking", "organic", "traffic"],
    "development": ["development", "code", "programming", "feature", "api", "backend", "frontend", "build"],
    "design": ["design", "ui", "ux", "mockup", "wireframe", "visual", "brand"],
    "infrastructure": ["infrastructure", "server", "deployment", "ci/cd", "devops", "hosting", "cloud"],
    "bug": ["bug", "fix", "issue", "error", "crash", "broken", "repair"],
    "research": ["research", "analysis", "investigate", "study", "survey", "data"],
    "product": ["product", "roadmap", "strategy", "planning", "road map"],
    "finance": ["finance", "payment", "billing", "invoice", "revenue", "money", "cost"],
    "legal": ["legal", "compliance", "gdpr", "privacy", "terms", "policy"],
    "general": ["general", "misc", "other"],
}

EPIC_MATCH_THRESHOLD = 2


def epic_keywords(epic: Epic) -> list[str]:
    """Keyword set for an epic: a known theme in its title, else its longer title words."""
    lower_title = epic.title.lower()
    for theme, words in EPIC_KEYWORDS.items():
        if theme in lower_title:
            return words
    return [w for w in lower_title.split() if len(w) > 3]


def score_epic(task: Task, epic: Epic) -> int:
    """+1 per keyword in the task text, +2 more when it appears in the title."""
    text = f"{task.title} {task.description}".lower()
    title = task.title.lower()
    score = 0
    for keyword in epic_keywords(epic):
        keyword = keyword.lower()
        if keyword in text:
            score += 1
            if keyword in title:
                score += 2
    return score


def best_epic_for(task: Task, epics: list[Epic]) -> tuple[Optional[Epic], int]:
    best: Optional[Epic] = None
    best_score = 0
    for epic in epics:
        if task.business_id and epic.business_id and epic.business_id != task.business_id:
            continue
        score = score_epic(task, epic)
        if score > best_score:
            best, best_score = epic, score
    return best, best_score


def smart_assign_epics(
    tx: WorkflowTx,
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
    actor: Actor = SYSTEM,
) -> MigrationResult:
    """Attach orphaned tasks to the best-matching epic when the match is strong enough."""
    epics = tx.epics.all()
    assignments: list[dict[str, str]] = []

    def _matches(tx: WorkflowTx, task: Task) -> bool:
        if task.epic_id:
            return False
        _, score = best_epic_for(task, epics)
        return score >= EPIC_MATCH_THRESHOLD

    def _attach(tx: WorkflowTx, task: Task) -> None:
        epic, _ = best_epic_for(task, epics)
        if epic is None:
            raise ValidationError("no matching epic", task_id=task.id)
        task.epic_id = epic.id
        task.touch()
        sync_epic_task_link(tx, task.id, None, epic.id)
        assignments.append({"task": task.title, "epic": epic.title})

    step = MigrationStep(
        name="smart_assign_epics",
        candidates=_orphans,
        predicate=_matches,
        transform=_attach,
        batch_size=batch_size,
    )
    result = step.run(tx)
    for epic in epics:
        recalculate_progress(tx, epic.id, actor)
    result.details = {"assignments": assignments}
    _summarize(
        tx,
        result,
        actor,
        f"Smart-assigned {result.processed} tasks to epics based on content matching",
    )
    return result


# ---------------------------------------------------------------------------
# Ticket numbers and subscriptions
# ---------------------------------------------------------------------------

def backfill_ticket_numbers(
    tx: WorkflowTx,
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
    default_prefix: str = DEFAULT_TICKET_PREFIX,
    actor: Actor = SYSTEM,
) -> MigrationResult:
    """Number tasks that predate ticket numbers, oldest first within each business."""

    def _candidates(tx: WorkflowTx) -> list[Task]:
        return sorted(tx.tasks.all(), key=lambda t: (t.business_id, t.created_at))

    def _number(tx: WorkflowTx, task: Task) -> None:
        task.ticket_number = next_ticket_number(tx, task.business_id, default_prefix)

    step = MigrationStep(
        name="backfill_ticket_numbers",
        candidates=_candidates,
        predicate=lambda tx, t: not t.ticket_number,
        transform=_number,
        batch_size=batch_size,
    )
    result = step.run(tx)
    _summarize(tx, result, actor, f"Assigned ticket numbers to {result.processed} tasks")
    return result


def backfill_thread_subscriptions(
    tx: WorkflowTx,
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
    actor: Actor = SYSTEM,
) -> MigrationResult:
    """Subscribe every assignee to the threads of the tasks they hold."""

    def _pairs(tx: WorkflowTx) -> list[tuple[Task, str]]:
        return [(task, agent_id) for task in tx.tasks.all() for agent_id in task.assignee_ids]

    def _missing(tx: WorkflowTx, pair: tuple[Task, str]) -> bool:
        task, agent_id = pair
        return tx.find_subscription(AgentActor(agent_id), task.id) is None

    def _subscribe(tx: WorkflowTx, pair: tuple[Task, str]) -> None:
        task, agent_id = pair
        subscribe(tx, AgentActor(agent_id), task)

    step: MigrationStep[tuple[Task, str]] = MigrationStep(
        name="backfill_thread_subscriptions",
        candidates=_pairs,
        predicate=_missing,
        transform=_subscribe,
        batch_size=batch_size,
        describe=lambda pair: f"{pair[0].id}/{pair[1]}",
    )
    result = step.run(tx)
    _summarize(tx, result, actor, f"Created {result.processed} missing thread subscriptions")
    return result


# ---------------------------------------------------------------------------
# Epic deletion
# ---------------------------------------------------------------------------

def delete_epic(
    tx: WorkflowTx,
    epic_id: str,
    reassign_to: Optional[str] = None,
    batch_size: int = DEFAULT_MIGRATION_BATCH_SIZE,
    actor: Actor = SYSTEM,
) -> MigrationResult:
    """Move or orphan one batch of the epic's tasks; delete the epic once it is empty."""
    epic = tx.epics.get(epic_id)
    if epic is None:
        raise NotFoundError("Epic", epic_id)
    target: Optional[Epic] = None
    if reassign_to:
        if reassign_to == epic_id:
            raise ValidationError("Cannot reassign tasks to the epic being deleted", epic_id=epic_id)
        target = tx.epics.get(reassign_to)
        if target is None:
            raise NotFoundError("Epic", reassign_to)

    def _members(tx: WorkflowTx) -> list[Task]:
        return tx.tasks.filter(lambda t: t.epic_id == epic_id)

    def _move(tx: WorkflowTx, task: Task) -> None:
        task.epic_id = target.id if target else None
        task.touch()
        sync_epic_task_link(tx, task.id, epic_id, task.epic_id)

    step = MigrationStep(
        name="delete_epic",
        candidates=_members,
        predicate=lambda tx, t: t.epic_id == epic_id,
        transform=_move,
        batch_size=batch_size,
    )
    result = step.run(tx)
    if target is not None:
        recalculate_progress(tx, target.id, actor)

    deleted = result.remaining == 0 and not _members(tx)
    if deleted:
        tx.epics.remove(epic_id)
        suffix = " (tasks reassigned)" if target else " (tasks unassigned)"
        log_activity(
            tx,
            ActivityType.EPIC_DELETED,
            actor,
            f'{actor_name(tx, actor)} deleted epic "{epic.title}"{suffix}',
            business_id=epic.business_id,
        )
    else:
        recalculate_progress(tx, epic_id, actor)
    result.details = {"epic_id": epic_id, "deleted": deleted, "reassigned_to": reassign_to}
    return result
