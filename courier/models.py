"""
Data models for scheduled message delivery.

Messages are immutable values: every change produces a new Message with the
same id (see courier.lifecycle), and only a MessageStore persists it.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any

from courier.errors import ValidationError
from courier.recurrence import UTC, Recurrence, ensure_utc, resolve_timezone

MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 10_000
MAX_REMINDER_MINUTES = 30 * 24 * 60
MIN_LEAD_TIME = timedelta(minutes=1)
MAX_HORIZON = timedelta(days=round(50 * 365.25))


def utcnow() -> datetime:
    return datetime.now(UTC)


class MessageStatus(str, Enum):
    """Lifecycle status of a message."""

    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliveryChannel(str, Enum):
    """Transport a message is delivered through."""

    EMAIL = "email"
    PUSH = "push"


class JobState(str, Enum):
    """State of a row in the durable job table."""

    AVAILABLE = "available"
    RUNNING = "running"
    RETRYABLE = "retryable"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


# At most one job per message may be in one of these states
ACTIVE_JOB_STATES = (JobState.AVAILABLE, JobState.RUNNING, JobState.RETRYABLE)


def validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title cannot be empty")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title is too long (max {MAX_TITLE_LENGTH} characters)")
    if "\n" in title or "\r" in title:
        raise ValidationError("title cannot contain line breaks")
    return title


def validate_body(body: str) -> str:
    body = (body or "").strip()
    if not body:
        raise ValidationError("body cannot be empty")
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationError(f"body is too long (max {MAX_BODY_LENGTH:,} characters)")
    return body


def _validate_reminder(minutes: Optional[int]) -> Optional[int]:
    if minutes is None or minutes == 0:
        return None
    if minutes < 0:
        raise ValidationError("reminder minutes must be positive")
    if minutes > MAX_REMINDER_MINUTES:
        raise ValidationError("reminder minutes cannot exceed 30 days")
    return minutes


def _coerce_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(f"invalid {label}: {value!r}") from e


@dataclass(frozen=True)
class Message:
    """
    A user-authored message waiting for (or past) delivery.

    Attributes:
        id: Opaque unique id, never reused
        user_id: Owner of the message
        title: Single-line title
        body: Message text
        deliver_at: Absolute delivery instant (aware UTC)
        timezone: IANA name, used for display and recurrence math only
        status: Lifecycle status
        channel: Delivery channel
        recurrence: Repeat pattern applied after each successful send
        reminder_minutes: Optional lead time before delivery
        created_at: Creation instant
        updated_at: Instant of the last replacement
        delivered_at: Set once, when the message first reaches 'delivered'
    """
    id: str
    user_id: str
    title: str
    body: str
    deliver_at: datetime
    timezone: str = "UTC"
    status: MessageStatus = MessageStatus.SCHEDULED
    channel: DeliveryChannel = DeliveryChannel.EMAIL
    recurrence: Recurrence = Recurrence.NONE
    reminder_minutes: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: str,
        title: str,
        body: str,
        deliver_at: datetime,
        timezone: str = "UTC",
        channel: str = "email",
        recurrence: str = "none",
        reminder_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
        message_id: Optional[str] = None
    ) -> 'Message':
        """
        Validated constructor for new messages.

        The delivery time is checked against ``now`` here and only here;
        later reads and transitions do not re-validate it.

        Raises:
            ValidationError: If any field is out of range
            InvalidTimezone: If the timezone name cannot be resolved
        """
        if not user_id:
            raise ValidationError("user id cannot be empty")

        now = ensure_utc(now) if now else utcnow()
        timezone = (timezone or "UTC").strip() or "UTC"
        resolve_timezone(timezone)

        deliver_at = ensure_utc(deliver_at)
        if deliver_at < now + MIN_LEAD_TIME:
            raise ValidationError("delivery date must be at least 1 minute in the future")
        if deliver_at > now + MAX_HORIZON:
            raise ValidationError("delivery date is too far in the future")

        return cls(
            id=message_id or str(uuid.uuid4()),
            user_id=str(user_id),
            title=validate_title(title),
            body=validate_body(body),
            deliver_at=deliver_at,
            timezone=timezone,
            status=MessageStatus.SCHEDULED,
            channel=_coerce_enum(DeliveryChannel, channel or "email", "delivery channel"),
            recurrence=_coerce_enum(Recurrence, recurrence or "none", "recurrence pattern"),
            reminder_minutes=_validate_reminder(reminder_minutes),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not Recurrence.NONE

    def replaced(self, **changes) -> 'Message':
        """Return a copy with ``changes`` applied; lifecycle rules live in courier.lifecycle."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'body': self.body,
            'deliver_at': self.deliver_at.isoformat(),
            'timezone': self.timezone,
            'status': self.status.value,
            'channel': self.channel.value,
            'recurrence': self.recurrence.value,
            'reminder_minutes': self.reminder_minutes,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'delivered_at': self.delivered_at.isoformat() if self.delivered_at else None,
        }

    @classmethod
    def from_row(cls, row) -> 'Message':
        """Create from a database row mapping"""
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            title=row['title'],
            body=row['body'],
            deliver_at=row['deliver_at'],
            timezone=row['timezone'],
            status=MessageStatus(row['status']),
            channel=DeliveryChannel(row['channel']),
            recurrence=Recurrence(row['recurrence']),
            reminder_minutes=row['reminder_minutes'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            delivered_at=row['delivered_at'],
        )


@dataclass(frozen=True)
class UserProfile:
    """Delivery preferences of a message owner."""
    user_id: str
    email: str
    name: str = ""
    timezone: str = "UTC"
    notification_email: Optional[str] = None
    email_notifications: bool = True
    push_notifications: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @property
    def effective_email(self) -> str:
        """Notification address if set, otherwise the account email."""
        return self.notification_email or self.email

    def accepts(self, channel: DeliveryChannel) -> bool:
        if channel is DeliveryChannel.EMAIL:
            return self.email_notifications
        return self.push_notifications

    @classmethod
    def from_row(cls, row) -> 'UserProfile':
        return cls(
            user_id=row['id'],
            email=row['email'],
            name=row['name'] or "",
            timezone=row['timezone'],
            notification_email=row['notification_email'],
            email_notifications=bool(row['email_notifications']),
            push_notifications=bool(row['push_notifications']),
        )


@dataclass(frozen=True)
class DeliveryPayload:
    """Everything a DeliverySender needs to transmit one message."""
    message_id: str
    user_id: str
    channel: DeliveryChannel
    recipient: str
    subject: str
    body: str
    scheduled_for: datetime
    prepared_at: datetime


@dataclass
class SendResult:
    """Outcome reported by a DeliverySender."""
    sent: bool
    detail: str = ""
    provider_id: Optional[str] = None


@dataclass(frozen=True)
class ScheduleHandle:
    """Describes how a scheduled delivery is being tracked."""
    message_id: str
    scheduled_for: datetime
    schedule_id: str
    mode: str
    status: str = "active"


@dataclass(frozen=True)
class ScheduledMessage:
    """Read-only projection of a pending delivery."""
    message_id: str
    scheduled_for: datetime
    schedule_id: str
    status: str
    created_at: datetime
    attempt: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'scheduled_for': self.scheduled_for.isoformat(),
            'schedule_id': self.schedule_id,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'attempt': self.attempt,
        }


@dataclass(frozen=True)
class DeliveryLogEntry:
    """One recorded delivery attempt."""
    message_id: str
    status: str  # 'sent', 'failed' or 'skipped'
    attempted_at: datetime
    error: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'message_id': self.message_id,
            'status': self.status,
            'attempted_at': self.attempted_at.isoformat(),
            'error': self.error,
        }


@dataclass(frozen=True)
class Job:
    """A persisted intent to run one delivery attempt for a message."""
    id: int
    message_id: str
    queue: str
    state: JobState
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    created_at: datetime
    leased_until: Optional[datetime] = None
    lease_token: Optional[str] = None
    last_error: Optional[str] = None
    finalized_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_JOB_STATES

    @classmethod
    def from_row(cls, row) -> 'Job':
        return cls(
            id=row['id'],
            message_id=row['message_id'],
            queue=row['queue'],
            state=JobState(row['state']),
            attempt=row['attempt'],
            max_attempts=row['max_attempts'],
            scheduled_at=row['scheduled_at'],
            created_at=row['created_at'],
            leased_until=row['leased_until'],
            lease_token=row['lease_token'],
            last_error=row['last_error'],
            finalized_at=row['finalized_at'],
        )
