"""Activity logging, notifications and thread subscriptions.

Every helper here writes into the caller's open transaction, so derived
records commit (or vanish) together with the mutation that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from ..constants import DEFAULT_PREVIEW_CHARS
from ..utils import _iso_from_ms, _now_ms, _truncate
from .actors import Actor, AgentActor, UserActor, resolve_actor_name
from .model import (
    Activity,
    ActivityType,
    Epic,
    Message,
    Notification,
    NotificationType,
    SubscriptionLevel,
    Task,
    ThreadSubscription,
)
from .store import WorkflowTx


def actor_name(tx: WorkflowTx, actor: Actor) -> str:
    return resolve_actor_name(actor, tx.agent_names())


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

def log_activity(
    tx: WorkflowTx,
    activity_type: ActivityType,
    actor: Actor,
    message: str,
    *,
    task: Optional[Task] = None,
    epic: Optional[Epic] = None,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    business_id: Optional[str] = None,
) -> Activity:
    """Append one audit entry with the actor name and task reference denormalized."""
    if business_id is None:
        business_id = task.business_id if task else (epic.business_id if epic else None)
    activity = Activity(
        business_id=business_id,
        type=activity_type,
        actor=actor,
        actor_name=actor_name(tx, actor),
        message=message,
        task_id=task.id if task else None,
        task_title=task.title if task else None,
        ticket_number=task.ticket_number if task else None,
        epic_id=epic.id if epic else (task.epic_id if task else None),
        epic_title=epic.title if epic else None,
        old_value=old_value,
        new_value=new_value,
    )
    tx.activities.add(activity)
    return activity


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def notify(
    tx: WorkflowTx,
    recipient: Actor,
    notification_type: NotificationType,
    content: str,
    *,
    task: Optional[Task] = None,
    from_actor: Optional[Actor] = None,
    message_id: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> Notification:
    expires_at = None
    if ttl_seconds:
        now = _now_ms() if now_ms is None else now_ms
        expires_at = _iso_from_ms(now + ttl_seconds * 1000)
    notification = Notification(
        recipient=recipient,
        type=notification_type,
        content=content,
        from_actor=from_actor,
        from_name=actor_name(tx, from_actor) if from_actor else None,
        task_id=task.id if task else None,
        task_title=task.title if task else None,
        message_id=message_id,
        expires_at=expires_at,
    )
    tx.notifications.add(notification)
    return notification


# ---------------------------------------------------------------------------
# Thread subscriptions
# ---------------------------------------------------------------------------

def subscribe(
    tx: WorkflowTx,
    actor: Actor,
    task: Task,
    level: SubscriptionLevel = SubscriptionLevel.ALL,
) -> ThreadSubscription:
    """Subscribe *actor* to the task thread; an existing subscription is returned as-is."""
    existing = tx.find_subscription(actor, task.id)
    if existing is not None:
        return existing
    sub = ThreadSubscription(actor=actor, task_id=task.id, business_id=task.business_id, level=level)
    tx.subscriptions.add(sub)
    return sub


def unsubscribe(tx: WorkflowTx, actor: Actor, task_id: str) -> bool:
    existing = tx.find_subscription(actor, task_id)
    if existing is None:
        return False
    return tx.subscriptions.remove(existing.id)


# ---------------------------------------------------------------------------
# Comment fan-out
# ---------------------------------------------------------------------------

@dataclass
class FanOutReport:
    notified: list[str] = field(default_factory=list)  # actor keys, in notification order
    subscribed: list[str] = field(default_factory=list)


def _preview(content: str, limit: int) -> str:
    return _truncate(content, limit)


def fan_out_comment(
    tx: WorkflowTx,
    task: Task,
    message: Message,
    sender: Actor,
    *,
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ttl_seconds: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> FanOutReport:
    """Write the activity, subscriptions and notifications for a new comment.

    One ``notified`` set spans mention-all, explicit mentions and the
    subscriber pass, so nobody is notified twice for the same comment.
    """
    report = FanOutReport()
    name = actor_name(tx, sender)
    preview = _preview(message.content, preview_chars)

    log_activity(tx, ActivityType.COMMENT_ADDED, sender, f'{name} commented on "{task.title}"', task=task)

    if not (isinstance(sender, UserActor) and sender.is_anonymous):
        if tx.find_subscription(sender, task.id) is None:
            report.subscribed.append(sender.key)
        subscribe(tx, sender, task)

    notified: set[str] = {sender.key}

    def _reach(recipient: Actor, content: str) -> None:
        if tx.find_subscription(recipient, task.id) is None:
            report.subscribed.append(recipient.key)
        subscribe(tx, recipient, task)
        if recipient.key in notified:
            return
        notify(
            tx,
            recipient,
            NotificationType.MENTION,
            content,
            task=task,
            from_actor=sender,
            message_id=message.id,
            ttl_seconds=ttl_seconds,
            now_ms=now_ms,
        )
        notified.add(recipient.key)
        report.notified.append(recipient.key)

    if message.mention_all:
        for agent in tx.agents.all():
            recipient = AgentActor(agent.id)
            if recipient.key == sender.key:
                continue
            _reach(recipient, f'📢 @all: {name} posted in "{task.title}": {preview}')
        log_activity(tx, ActivityType.MENTION, sender, f"{name} mentioned @all in task", task=task)

    for agent_id in message.mentions:
        recipient = AgentActor(agent_id)
        if recipient.key == sender.key:
            continue
        _reach(recipient, f'@{name} mentioned you in "{task.title}": {preview}')
        log_activity(
            tx,
            ActivityType.MENTION,
            sender,
            f"{name} mentioned {actor_name(tx, recipient)} in task",
            task=task,
        )

    for sub in tx.subscriptions_for_task(task.id):
        if sub.actor.key in notified:
            continue
        if sub.level == SubscriptionLevel.MENTIONS:
            continue
        notify(
            tx,
            sub.actor,
            NotificationType.COMMENT,
            f'💬 New comment on "{task.title}" by {name}',
            task=task,
            from_actor=sender,
            message_id=message.id,
            ttl_seconds=ttl_seconds,
            now_ms=now_ms,
        )
        notified.add(sub.actor.key)
        report.notified.append(sub.actor.key)

    logger.debug(
        "Comment {} on {}: notified {} actor(s), {} new subscription(s)",
        message.id,
        task.id,
        len(report.notified),
        len(report.subscribed),
    )
    return report


# ---------------------------------------------------------------------------
# Assignment / unblock fan-out
# ---------------------------------------------------------------------------

def notify_agents(
    tx: WorkflowTx,
    agent_ids: Iterable[str],
    notification_type: NotificationType,
    content: str,
    *,
    task: Task,
    from_actor: Optional[Actor] = None,
    ttl_seconds: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> list[Notification]:
    """Notify each agent once, in order, skipping duplicates."""
    seen: set[str] = set()
    out: list[Notification] = []
    for agent_id in agent_ids:
        if agent_id in seen:
            continue
        seen.add(agent_id)
        out.append(
            notify(
                tx,
                AgentActor(agent_id),
                notification_type,
                content,
                task=task,
                from_actor=from_actor,
                ttl_seconds=ttl_seconds,
                now_ms=now_ms,
            )
        )
    return out
