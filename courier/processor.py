"""
Delivery processing shared by both scheduler implementations.

Given a message id: load it, skip it unless it is still scheduled, build the
payload from the owner's preferences, hand it to the sender, and write the
resulting message value back to the store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from courier import lifecycle
from courier.errors import InvalidTimezone, SendFailed, StorageUnavailable
from courier.models import (
    DeliveryChannel,
    DeliveryLogEntry,
    DeliveryPayload,
    Message,
    MessageStatus,
    UserProfile,
    utcnow,
)
from courier.recurrence import next_occurrence, to_local
from courier.sender import DeliverySender
from courier.store import MessageStore

logger = logging.getLogger(__name__)

DATE_FORMAT = "%B %d, %Y at %I:%M %p"


class OutcomeStatus(str, Enum):
    DELIVERED = "delivered"
    RESCHEDULED = "rescheduled"
    SKIPPED = "skipped"
    NOT_DUE = "not_due"


@dataclass(frozen=True)
class DeliveryOutcome:
    """
    Result of one successful (or skipped) processing run.

    Attributes:
        message_id: Message that was processed
        status: delivered, rescheduled (recurring), skipped (not scheduled,
                or changed by someone else during the send) or not_due
        message: Message value as written back to the store
        next_delivery_at: Next occurrence for recurring messages, or the
                          pending delivery time of a message not yet due
    """
    message_id: str
    status: OutcomeStatus
    message: Optional[Message] = None
    next_delivery_at: Optional[datetime] = None


def render_subject(message: Message) -> str:
    if message.title:
        return f"Message from your past: {message.title}"
    return "You have a message from your past self"


def render_body(message: Message, profile: UserProfile) -> str:
    written = to_local(message.created_at, message.timezone).strftime(DATE_FORMAT)
    scheduled = to_local(message.deliver_at, message.timezone).strftime(DATE_FORMAT)

    lines = [
        f"Hello {profile.display_name},",
        "",
        "You scheduled this message to be delivered to your future self.",
        "",
    ]
    if message.title:
        lines += [f"Subject: {message.title}", ""]
    lines += [
        "Message:",
        message.body,
        "",
        f"Originally written on: {written}",
        f"Scheduled for delivery on: {scheduled}",
        "",
        "Best regards,",
        "Your Past Self",
    ]
    return "\n".join(lines)


class DeliveryProcessor:
    """
    Runs one delivery attempt for a message.

    Args:
        store: Message store collaborator
        sender: Delivery sender collaborator
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        store: MessageStore,
        sender: DeliverySender,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.sender = sender
        self.clock = clock

    def build_payload(
        self,
        message: Message,
        profile: Optional[UserProfile],
        now: datetime
    ) -> DeliveryPayload:
        """
        Prepare what the sender transmits.

        Raises:
            SendFailed: (non-retryable) if the owner is unknown, has opted
                        out of the channel, or has no address
        """
        if profile is None:
            raise SendFailed(f"no delivery profile for user {message.user_id}", retryable=False)
        if not profile.accepts(message.channel):
            raise SendFailed(
                f"recipient has {message.channel.value} notifications disabled",
                retryable=False
            )

        if message.channel is DeliveryChannel.EMAIL:
            recipient = profile.effective_email
            if not recipient:
                raise SendFailed("no valid recipient email", retryable=False)
        else:
            recipient = profile.user_id

        return DeliveryPayload(
            message_id=message.id,
            user_id=message.user_id,
            channel=message.channel,
            recipient=recipient,
            subject=render_subject(message),
            body=render_body(message, profile),
            scheduled_for=message.deliver_at,
            prepared_at=now,
        )

    def process(self, message_id: str) -> DeliveryOutcome:
        """
        Deliver one message.

        Safe to call more than once for the same message: once the message
        has left 'scheduled' further calls are no-ops, and a message whose
        delivery time is still ahead is left for a later run.

        Every write back is conditional on the message still being the
        scheduled value that was loaded. If a cancel or reschedule landed
        while the send was in flight, that change is kept and the outcome
        is 'skipped'.

        Returns:
            DeliveryOutcome describing what was written back

        Raises:
            MessageNotFound: If the message no longer exists
            SendFailed: If the payload was rejected or the send failed; the
                        message has been marked 'failed'
            InvalidTimezone: If a recurring message's timezone is unusable;
                             the message has been marked 'failed'
            StorageUnavailable: If the store cannot be reached
        """
        message = self.store.find_by_id(message_id)
        if message.status is not MessageStatus.SCHEDULED:
            logger.info(
                f"[message:{message_id}] Status is {message.status.value}, nothing to deliver"
            )
            return DeliveryOutcome(message_id, OutcomeStatus.SKIPPED, message)

        now = self.clock()
        if message.deliver_at > now:
            logger.info(
                f"[message:{message_id}] Not due until {message.deliver_at.isoformat()}"
            )
            return DeliveryOutcome(
                message_id, OutcomeStatus.NOT_DUE, message, message.deliver_at
            )

        next_delivery_at = None
        if message.is_recurring:
            # Computed before sending so a bad timezone never causes a send
            # that cannot be followed up.
            try:
                next_delivery_at = next_occurrence(
                    message.deliver_at, message.timezone, message.recurrence
                )
            except InvalidTimezone as e:
                if self._fail(message, str(e), now):
                    raise
                return DeliveryOutcome(message_id, OutcomeStatus.SKIPPED)

        try:
            payload = self.build_payload(message, self.store.find_profile(message.user_id), now)
        except SendFailed as e:
            if self._fail(message, e.detail, now):
                raise
            return DeliveryOutcome(message_id, OutcomeStatus.SKIPPED)

        logger.info(f"[message:{message_id}] Sending via {payload.channel.value}")
        cause = None
        try:
            result = self.sender.send(payload)
        except SendFailed as e:
            failure = e
        except Exception as e:
            failure = SendFailed(f"{type(e).__name__}: {e}")
            cause = e
        else:
            if result.sent:
                return self._complete(message, next_delivery_at, now)
            failure = SendFailed(result.detail or "sender reported message not sent")

        if self._fail(message, failure.detail, now):
            if cause is not None:
                raise failure from cause
            raise failure
        return DeliveryOutcome(message_id, OutcomeStatus.SKIPPED)

    def _write(self, loaded: Message, updated: Message) -> Optional[Message]:
        return self.store.update(
            updated,
            expected_status=MessageStatus.SCHEDULED,
            expected_deliver_at=loaded.deliver_at,
        )

    def _complete(
        self,
        message: Message,
        next_delivery_at: Optional[datetime],
        now: datetime
    ) -> DeliveryOutcome:
        if next_delivery_at is not None:
            updated = self._write(
                message, lifecycle.with_delivery_time(message, next_delivery_at, now=now)
            )
        else:
            updated = self._write(
                message, lifecycle.transition(message, MessageStatus.DELIVERED, now=now)
            )
        self._record(message.id, "sent", now)

        if updated is None:
            logger.warning(
                f"[message:{message.id}] Sent, but the message was changed during the send; "
                f"keeping the newer state"
            )
            return DeliveryOutcome(message.id, OutcomeStatus.SKIPPED)

        if next_delivery_at is not None:
            logger.info(
                f"[message:{message.id}] Delivered, next occurrence at "
                f"{next_delivery_at.isoformat()}"
            )
            return DeliveryOutcome(
                message.id, OutcomeStatus.RESCHEDULED, updated, next_delivery_at
            )

        logger.info(f"[message:{message.id}] Delivered")
        return DeliveryOutcome(message.id, OutcomeStatus.DELIVERED, updated)

    def _fail(self, message: Message, detail: str, now: datetime) -> bool:
        """Mark the message failed. False if it had changed since it was loaded."""
        logger.error(f"[message:{message.id}] Delivery failed: {detail}")
        updated = self._write(message, lifecycle.transition(message, MessageStatus.FAILED, now=now))
        self._record(message.id, "failed", now, error=detail)
        if updated is None:
            logger.warning(f"[message:{message.id}] Changed during the attempt, not marking it failed")
            return False
        return True

    def _record(self, message_id: str, status: str, now: datetime, error: Optional[str] = None):
        try:
            self.store.log_delivery(DeliveryLogEntry(
                message_id=message_id,
                status=status,
                attempted_at=now,
                error=error,
            ))
        except StorageUnavailable as e:
            logger.warning(f"[message:{message_id}] Could not record delivery attempt: {e}")
