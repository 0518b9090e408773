"""
Error kinds raised by the delivery scheduler.

Programming/data errors (InvalidTransition, InvalidTimezone, ValidationError)
surface to the caller immediately. SendFailed is retried by the queue-backed
scheduler until attempts are exhausted. StorageUnavailable is logged by the
worker loops, which back off to the next poll cycle.
"""

from typing import Optional


class CourierError(Exception):
    """Base class for all scheduler errors."""
    pass


class ValidationError(CourierError):
    """Raised when a message fails constructor validation."""
    pass


class MessageNotFound(CourierError):
    """Raised when a message id is unknown to the store."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class InvalidTransition(CourierError):
    """Raised when a status change is not in the legal-transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from {current} to {target}")


class InvalidTimezone(CourierError):
    """Raised when an IANA timezone name cannot be resolved."""

    def __init__(self, timezone: str):
        self.timezone = timezone
        super().__init__(f"Invalid timezone: {timezone!r}")


class SendFailed(CourierError):
    """
    Raised when a delivery attempt does not go out.

    Args:
        detail: Human-readable reason reported by the sender
        retryable: False when retrying cannot help (recipient opted out,
                   no deliverable address)
    """

    def __init__(self, detail: str, retryable: bool = True):
        self.detail = detail
        self.retryable = retryable
        super().__init__(f"Send failed: {detail}")


class AttemptsExhausted(CourierError):
    """Raised when a job has used all of its retry attempts."""

    def __init__(self, message_id: str, attempts: int, last_error: Optional[str] = None):
        self.message_id = message_id
        self.attempts = attempts
        self.last_error = last_error
        text = f"Delivery of {message_id} failed after {attempts} retries"
        if last_error:
            text += f": {last_error}"
        super().__init__(text)


class StorageUnavailable(CourierError):
    """Raised when the message store or job table cannot be reached."""
    pass
