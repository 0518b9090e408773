"""
Message lifecycle state machine.

    scheduled -> delivered | failed | cancelled
    failed    -> scheduled | cancelled
    delivered, cancelled: terminal

All functions are pure: they take a Message and return a new Message (or
raise), leaving persistence to the MessageStore.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from courier.errors import InvalidTransition
from courier.models import Message, MessageStatus, utcnow, validate_body, validate_title
from courier.recurrence import ensure_utc, resolve_timezone

LEGAL_TRANSITIONS: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.SCHEDULED: frozenset({
        MessageStatus.DELIVERED,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
    }),
    MessageStatus.FAILED: frozenset({
        MessageStatus.SCHEDULED,
        MessageStatus.CANCELLED,
    }),
    MessageStatus.DELIVERED: frozenset(),
    MessageStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in LEGAL_TRANSITIONS.items() if not targets
)


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return MessageStatus(target) in LEGAL_TRANSITIONS[MessageStatus(current)]


def transition(message: Message, target, now: Optional[datetime] = None) -> Message:
    """
    Move a message to ``target`` status.

    Entering 'delivered' stamps ``delivered_at``; the table has no way back
    into 'delivered', so the stamp is written exactly once.

    Raises:
        InvalidTransition: If the pair is not in LEGAL_TRANSITIONS
    """
    target = MessageStatus(target)
    if not can_transition(message.status, target):
        raise InvalidTransition(message.status.value, target.value)

    now = ensure_utc(now) if now else utcnow()
    changes = {'status': target, 'updated_at': now}
    if target is MessageStatus.DELIVERED:
        changes['delivered_at'] = now
    return message.replaced(**changes)


def is_terminal(message: Message) -> bool:
    return message.status in TERMINAL_STATUSES


def is_editable(message: Message) -> bool:
    """Title, body and date may only change while the message is scheduled."""
    return message.status is MessageStatus.SCHEDULED


def is_deletable(message: Message) -> bool:
    return message.status in (MessageStatus.SCHEDULED, MessageStatus.FAILED)


def with_delivery_time(
    message: Message,
    deliver_at: datetime,
    tz_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> Message:
    """
    Replace the delivery instant (and optionally the timezone).

    Status is left alone; callers that need 'scheduled' combine this with
    transition().

    Raises:
        InvalidTimezone: If ``tz_name`` cannot be resolved
    """
    tz_name = tz_name or message.timezone
    resolve_timezone(tz_name)
    return message.replaced(
        deliver_at=ensure_utc(deliver_at),
        timezone=tz_name,
        updated_at=ensure_utc(now) if now else utcnow(),
    )


def with_content(
    message: Message,
    title: Optional[str] = None,
    body: Optional[str] = None,
    now: Optional[datetime] = None
) -> Message:
    """
    Replace title and/or body of an editable message.

    Raises:
        InvalidTransition: If the message is no longer scheduled
        ValidationError: If the new title or body is invalid
    """
    if not is_editable(message):
        raise InvalidTransition(message.status.value, "edited")
    changes = {'updated_at': ensure_utc(now) if now else utcnow()}
    if title is not None:
        changes['title'] = validate_title(title)
    if body is not None:
        changes['body'] = validate_body(body)
    return message.replaced(**changes)
