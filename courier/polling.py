"""
Polling scheduler, the fallback when no job table is available.

One interval job scans the store for scheduled messages that are due and
runs the DeliveryProcessor for each. There is no separate intent record:
the message's own status and delivery time are the schedule, and the
processor's status check is the only duplicate-delivery guard. Failed
deliveries stay failed until rescheduled.
"""

import logging
from concurrent.futures import ThreadPoolExecutor as FanOutPool
from datetime import datetime
from typing import Callable, Iterator, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from courier.errors import (
    InvalidTimezone,
    InvalidTransition,
    MessageNotFound,
    SendFailed,
    StorageUnavailable,
)
from courier.models import Message, MessageStatus, ScheduleHandle, ScheduledMessage, utcnow
from courier.processor import DeliveryProcessor, OutcomeStatus
from courier.recurrence import UTC, ensure_utc
from courier.service import MessageScheduler
from courier.store import MessageStore

logger = logging.getLogger(__name__)

POLL_JOB_ID = "due-message-poll"
LIST_LIMIT = 10_000


class PollingScheduler(MessageScheduler):
    """
    Scheduler that periodically scans the message store.

    Args:
        store: Message store collaborator
        processor: Delivery processor
        interval_seconds: Seconds between scans
        batch_size: Maximum due messages handled per scan
        fan_out: Messages delivered concurrently within one scan
        clock: Returns the current aware UTC time
    """

    mode = "polling"

    def __init__(
        self,
        store: MessageStore,
        processor: DeliveryProcessor,
        interval_seconds: float = 60,
        batch_size: int = 100,
        fan_out: int = 1,
        clock: Callable[[], datetime] = utcnow
    ):
        super().__init__(store, processor, clock)
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.fan_out = max(1, fan_out)

        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(1)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None,
            },
            timezone='UTC',
        )
        self.scheduler.add_listener(self._job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed_listener, EVENT_JOB_MISSED)

    @classmethod
    def from_config(
        cls,
        config,
        store: MessageStore,
        processor: DeliveryProcessor,
        clock: Callable[[], datetime] = utcnow
    ) -> 'PollingScheduler':
        settings = config.polling
        return cls(
            store,
            processor,
            interval_seconds=settings.interval_seconds,
            batch_size=settings.batch_size,
            fan_out=settings.fan_out,
            clock=clock,
        )

    @staticmethod
    def _job_error_listener(event):
        logger.error(f"Poll '{event.job_id}' raised exception: {event.exception}")

    @staticmethod
    def _job_missed_listener(event):
        logger.warning(f"Poll '{event.job_id}' missed scheduled run time")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        if self.scheduler.running:
            logger.warning("Polling scheduler is already running")
            return
        self.scheduler.add_job(
            self.poll_once,
            'interval',
            seconds=self.interval_seconds,
            id=POLL_JOB_ID,
            name=POLL_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(UTC),
        )
        self.scheduler.start()
        logger.info(
            f"Polling scheduler started: every {self.interval_seconds}s, "
            f"batch={self.batch_size} fan_out={self.fan_out}"
        )

    def stop(self, wait: bool = True):
        if not self.scheduler.running:
            logger.warning("Polling scheduler is not running")
            return
        logger.info("Stopping polling scheduler...")
        self.scheduler.shutdown(wait=wait)
        logger.info("Polling scheduler stopped")

    def poll_once(self) -> int:
        """
        Deliver every message due at the current clock time.

        Returns:
            Number of messages delivered (or rescheduled after delivery)
        """
        now = self.clock()
        try:
            due = self.store.find_due_before(now, self.batch_size)
        except StorageUnavailable as e:
            logger.warning(f"Storage unavailable, waiting for next poll: {e}")
            return 0

        if not due:
            logger.debug(f"No messages due at {now.isoformat()}")
            return 0

        logger.info(f"Found {len(due)} due message(s)")
        if self.fan_out > 1:
            with FanOutPool(max_workers=self.fan_out) as pool:
                results = list(pool.map(self._deliver, due))
        else:
            results = [self._deliver(message) for message in due]
        return sum(results)

    def _deliver(self, message: Message) -> bool:
        try:
            outcome = self.processor.process(message.id)
        except MessageNotFound as e:
            logger.warning(f"[message:{message.id}] {e}")
            return False
        except (SendFailed, InvalidTimezone, InvalidTransition) as e:
            logger.error(f"[message:{message.id}] Left in failed state: {e}")
            return False
        except StorageUnavailable as e:
            logger.warning(f"[message:{message.id}] Storage unavailable, will retry next poll: {e}")
            return False
        return outcome.status in (OutcomeStatus.DELIVERED, OutcomeStatus.RESCHEDULED)

    def _establish(self, message: Message) -> ScheduleHandle:
        return ScheduleHandle(
            message_id=message.id,
            scheduled_for=message.deliver_at,
            schedule_id=f"poll:{message.id}",
            mode=self.mode,
        )

    def _withdraw(self, message: Message) -> bool:
        return message.status is MessageStatus.SCHEDULED

    def list_scheduled(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[ScheduledMessage]:
        start = ensure_utc(start) if start else None
        end = ensure_utc(end) if end else None
        for message in self.store.find_by_status(MessageStatus.SCHEDULED, LIST_LIMIT):
            if start and message.deliver_at < start:
                continue
            if end and message.deliver_at > end:
                continue
            yield ScheduledMessage(
                message_id=message.id,
                scheduled_for=message.deliver_at,
                schedule_id=f"poll:{message.id}",
                status=message.status.value,
                created_at=message.created_at,
            )
