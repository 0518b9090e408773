"""
Delivery sender collaborator.

The scheduler never talks to SMTP or push gateways itself; it hands a
prepared DeliveryPayload to a DeliverySender and interprets the SendResult.
"""

import importlib
import logging
from abc import ABC, abstractmethod

from courier.models import DeliveryPayload, SendResult

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "courier.sender:LoggingSender"


class DeliverySender(ABC):
    """Transmits one prepared payload."""

    @abstractmethod
    def send(self, payload: DeliveryPayload) -> SendResult:
        """
        Attempt delivery.

        Returns:
            SendResult with ``sent`` True on success. Implementations may
            also raise; the processor treats any exception as a failed send.
        """


class LoggingSender(DeliverySender):
    """Writes payloads to the log instead of transmitting them."""

    def send(self, payload: DeliveryPayload) -> SendResult:
        logger.info(
            f"[message:{payload.message_id}] Would send via {payload.channel.value} "
            f"to {payload.recipient}: {payload.subject}"
        )
        logger.debug(f"[message:{payload.message_id}] Body:\n{payload.body}")
        return SendResult(sent=True, detail="logged")


def load_sender(path: str = DEFAULT_SENDER) -> DeliverySender:
    """
    Build a sender from a ``module:attr`` path.

    ``attr`` may be a DeliverySender subclass or a zero-argument factory.

    Raises:
        ValueError: If the path is malformed or does not produce a sender
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Sender path must look like 'package.module:Name', got {path!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None:
        raise ValueError(f"{module_name} has no attribute {attr!r}")

    sender = factory()
    if not isinstance(sender, DeliverySender):
        raise ValueError(f"{path} did not produce a DeliverySender")

    logger.info(f"Using delivery sender {path}")
    return sender
