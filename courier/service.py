"""
Scheduler contract and factory.

Provides:
- MessageScheduler, the interface shared by the queue-backed and polling
  implementations (schedule, cancel, reschedule, list_scheduled)
- create_scheduler(), which picks an implementation at construction time
- PID/info files so a running daemon can be found by `courier status`
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from courier import lifecycle
from courier.config import get_data_dir
from courier.errors import InvalidTransition, StorageUnavailable
from courier.models import Message, MessageStatus, ScheduleHandle, ScheduledMessage, utcnow
from courier.processor import DeliveryProcessor
from courier.recurrence import ensure_utc
from courier.store import MessageStore

logger = logging.getLogger(__name__)


def _get_pid_file_path() -> Path:
    return get_data_dir() / "courier.pid"


def _get_info_file_path() -> Path:
    return get_data_dir() / "courier_info.json"


def _is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 only checks
        return True
    except OSError:
        return False


def is_scheduler_running() -> Tuple[bool, Optional[int]]:
    """
    Check if a scheduler daemon is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = _get_pid_file_path()
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None

    if _is_process_running(pid):
        return True, pid

    # Stale PID file
    pid_file.unlink(missing_ok=True)
    return False, None


def get_scheduler_info() -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler.

    Returns:
        Dict with scheduler info or None if not running.
    """
    running, pid = is_scheduler_running()
    if not running:
        return None

    info = {'pid': pid, 'running': True, 'data_dir': str(get_data_dir())}
    info_file = _get_info_file_path()
    if info_file.exists():
        try:
            with open(info_file, 'r') as f:
                info = {**json.load(f), **info}
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Could not read scheduler info file: {e}")
    return info


def write_pid_file(info: Dict[str, Any]):
    """Write the current PID and runtime info for `courier status`."""
    pid_file = _get_pid_file_path()
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    logger.debug(f"Wrote PID file: {pid_file}")

    info_file = _get_info_file_path()
    try:
        with open(info_file, 'w') as f:
            json.dump({'pid': os.getpid(), 'started_at': utcnow().isoformat(), **info}, f, indent=2)
    except OSError as e:
        logger.warning(f"Failed to write scheduler info file: {e}")


def remove_pid_file():
    for path in (_get_pid_file_path(), _get_info_file_path()):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")


class MessageScheduler(ABC):
    """
    Public scheduling contract.

    Keeps the delivery intent for a message in sync with the message's own
    status and delivery time. Implementations decide how the intent is
    tracked (job table or store scan) and how due messages reach the
    DeliveryProcessor.

    Args:
        store: Message store collaborator
        processor: Delivery processor shared with the worker side
        clock: Returns the current aware UTC time
    """

    mode = None

    def __init__(
        self,
        store: MessageStore,
        processor: DeliveryProcessor,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.processor = processor
        self.clock = clock

    @abstractmethod
    def start(self):
        """Start background delivery."""

    @abstractmethod
    def stop(self, wait: bool = True):
        """
        Stop background delivery.

        Args:
            wait: If True, let in-flight deliveries finish first
        """

    @property
    @abstractmethod
    def running(self) -> bool:
        pass

    @abstractmethod
    def _establish(self, message: Message) -> ScheduleHandle:
        """Record delivery intent for an already-stored scheduled message."""

    @abstractmethod
    def _withdraw(self, message: Message) -> bool:
        """Drop pending intent for a message; True if one existed."""

    @abstractmethod
    def list_scheduled(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[ScheduledMessage]:
        """
        Pending deliveries between ``start`` and ``end`` (inclusive).

        Returns a one-shot iterator in no particular order.
        """

    def schedule(self, message_id: str, deliver_at: datetime) -> ScheduleHandle:
        """
        (Re)establish delivery of a message at ``deliver_at``.

        Any existing intent is superseded. The stored message is moved to
        'scheduled' (from 'failed' if needed) with the new delivery time. The
        time is not re-validated; a past time means "as soon as possible".

        If the intent cannot be recorded the message is put back the way it
        was and the error is raised, so a failed message never looks
        scheduled without anything to deliver it.

        Raises:
            MessageNotFound: If the id is unknown
            InvalidTransition: If the message is delivered or cancelled
            StorageUnavailable: If the message or its intent cannot be stored
        """
        now = self.clock()
        original = self.store.find_by_id(message_id)

        message = original
        if message.status is MessageStatus.FAILED:
            message = lifecycle.transition(message, MessageStatus.SCHEDULED, now=now)
        elif message.status is not MessageStatus.SCHEDULED:
            raise InvalidTransition(message.status.value, MessageStatus.SCHEDULED.value)

        message = self.store.update(
            lifecycle.with_delivery_time(message, ensure_utc(deliver_at), now=now),
            expected_status=original.status,
            expected_deliver_at=original.deliver_at,
        )
        if message is None:
            logger.info(f"[message:{message_id}] Changed while scheduling, retrying")
            return self.schedule(message_id, deliver_at)

        try:
            handle = self._establish(message)
        except Exception:
            self._restore(original, message)
            raise

        logger.info(
            f"[message:{message.id}] Scheduled for {handle.scheduled_for.isoformat()} "
            f"({handle.mode}, {handle.schedule_id})"
        )
        return handle

    def _restore(self, original: Message, written: Message):
        try:
            restored = self.store.update(
                original,
                expected_status=written.status,
                expected_deliver_at=written.deliver_at,
            )
        except StorageUnavailable as e:
            logger.error(f"[message:{original.id}] Could not restore after failed scheduling: {e}")
            return
        if restored is not None:
            logger.warning(
                f"[message:{original.id}] Scheduling failed, restored status {original.status.value}"
            )

    def reschedule(self, message_id: str, new_deliver_at: datetime) -> ScheduleHandle:
        """Same as schedule(); never leaves two intents for one message."""
        return self.schedule(message_id, new_deliver_at)

    def cancel(self, message_id: str) -> bool:
        """
        Cancel delivery of a message.

        Delivered and cancelled messages are left untouched.

        Returns:
            True if a pending intent existed

        Raises:
            MessageNotFound: If the id is unknown
        """
        message = self.store.find_by_id(message_id)
        if lifecycle.is_terminal(message):
            logger.info(f"[message:{message_id}] Already {message.status.value}, nothing to cancel")
            return False

        cancelled = self.store.update(
            lifecycle.transition(message, MessageStatus.CANCELLED, now=self.clock()),
            expected_status=message.status,
            expected_deliver_at=message.deliver_at,
        )
        if cancelled is None:
            logger.info(f"[message:{message_id}] Changed while cancelling, retrying")
            return self.cancel(message_id)

        had_intent = self._withdraw(message)
        logger.info(f"[message:{message_id}] Cancelled")
        return had_intent


def create_scheduler(
    config,
    store: Optional[MessageStore] = None,
    sender=None,
    clock: Callable[[], datetime] = utcnow
) -> MessageScheduler:
    """
    Build the scheduler selected by ``config.mode``.

    ``auto`` uses the queue-backed scheduler when the job table can be
    created, otherwise the polling scheduler.

    Args:
        config: SchedulerConfig instance
        store: Message store (default: SQLMessageStore on config.database_url)
        sender: Delivery sender (default: loaded from config.sender)
        clock: Returns the current aware UTC time
    """
    from courier.polling import PollingScheduler
    from courier.queue_scheduler import QueueScheduler
    from courier.sender import load_sender
    from courier.store import SQLMessageStore

    if store is None:
        store = SQLMessageStore(config.database_url)
    if sender is None:
        sender = load_sender(config.sender)
    processor = DeliveryProcessor(store, sender, clock=clock)

    mode = config.mode
    if mode in ('queue', 'auto'):
        engine = getattr(store, 'engine', None) or config.database_url
        try:
            return QueueScheduler.from_config(config, engine, store, processor, clock=clock)
        except StorageUnavailable as e:
            if mode == 'queue':
                raise
            logger.warning(f"Job table unavailable ({e}), falling back to polling scheduler")

    return PollingScheduler.from_config(config, store, processor, clock=clock)
