"""
Queue-backed scheduler.

A BackgroundScheduler runs N interval jobs ("worker-1" .. "worker-N") on a
thread pool. Each run drains the JobQueue: lease the earliest due job, hand
it to the DeliveryProcessor, then complete, retry or discard it. A separate
reaper job returns expired leases to the queue.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    EVENT_JOB_MISSED,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from courier import lifecycle
from courier.backoff import BackoffPolicy
from courier.errors import (
    AttemptsExhausted,
    InvalidTimezone,
    InvalidTransition,
    MessageNotFound,
    SendFailed,
    StorageUnavailable,
)
from courier.models import Job, JobState, Message, MessageStatus, ScheduleHandle, ScheduledMessage, utcnow
from courier.processor import DeliveryProcessor
from courier.queue import JobQueue
from courier.recurrence import UTC
from courier.service import MessageScheduler
from courier.store import MessageStore

logger = logging.getLogger(__name__)


class QueueScheduler(MessageScheduler):
    """
    Scheduler backed by the durable job table.

    Args:
        store: Message store collaborator
        processor: Delivery processor
        queue: Job table for this scheduler's queue
        workers: Number of concurrent worker loops
        poll_interval: Seconds between lease attempts of an idle worker
        clock: Returns the current aware UTC time
    """

    mode = "queue"

    def __init__(
        self,
        store: MessageStore,
        processor: DeliveryProcessor,
        queue: JobQueue,
        workers: int = 10,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow
    ):
        super().__init__(store, processor, clock)
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.queue = queue
        self.workers = workers
        self.poll_interval = poll_interval
        self._stopping = threading.Event()

        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(workers + 1)},  # workers + reaper
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None,
            },
            timezone='UTC',
        )
        self._setup_event_listeners()

    @classmethod
    def from_config(
        cls,
        config,
        engine,
        store: MessageStore,
        processor: DeliveryProcessor,
        clock: Callable[[], datetime] = utcnow
    ) -> 'QueueScheduler':
        """
        Build from a SchedulerConfig, creating the job table if needed.

        Raises:
            StorageUnavailable: If the job table cannot be created
        """
        settings = config.queue
        queue = JobQueue(
            engine,
            name=settings.name,
            max_attempts=settings.max_attempts,
            backoff=BackoffPolicy(
                schedule_minutes=list(settings.backoff.schedule_minutes),
                multiplier=settings.backoff.multiplier,
            ),
            lease_timeout=timedelta(seconds=settings.lease_timeout_seconds),
        )
        return cls(
            store,
            processor,
            queue,
            workers=settings.workers,
            poll_interval=settings.poll_interval_seconds,
            clock=clock,
        )

    def _setup_event_listeners(self):
        """Log worker loop runs that fail or fall behind."""

        def job_executed_listener(event):
            if event.retval:
                logger.debug(f"[{event.job_id}] Processed {event.retval} job(s)")

        def job_error_listener(event):
            logger.error(
                f"[{event.job_id}] Worker loop raised: {event.exception}",
                exc_info=(type(event.exception), event.exception, event.exception.__traceback__)
            )

        def job_missed_listener(event):
            logger.warning(f"[{event.job_id}] Missed scheduled run")

        def job_busy_listener(event):
            logger.debug(f"[{event.job_id}] Still draining, skipped a cycle")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_busy_listener, EVENT_JOB_MAX_INSTANCES)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the worker pool and the lease reaper."""
        if self.scheduler.running:
            logger.warning("Queue scheduler is already running")
            return

        self._stopping.clear()
        first_run = datetime.now(UTC)
        for i in range(1, self.workers + 1):
            worker = f"worker-{i}"
            self.scheduler.add_job(
                self._drain,
                'interval',
                seconds=self.poll_interval,
                args=[worker],
                id=worker,
                name=worker,
                replace_existing=True,
                next_run_time=first_run,
            )

        reap_every = max(self.poll_interval, self.queue.lease_timeout.total_seconds() / 2)
        self.scheduler.add_job(
            self.reclaim_expired,
            'interval',
            seconds=reap_every,
            id='lease-reaper',
            name='lease-reaper',
            replace_existing=True,
            next_run_time=first_run,
        )

        self.scheduler.start()
        logger.info(
            f"Queue scheduler started: queue={self.queue.name} workers={self.workers} "
            f"poll={self.poll_interval}s max_attempts={self.queue.max_attempts}"
        )

    def stop(self, wait: bool = True):
        if not self.scheduler.running:
            logger.warning("Queue scheduler is not running")
            return
        logger.info("Stopping queue scheduler...")
        self._stopping.set()
        self.scheduler.shutdown(wait=wait)
        logger.info("Queue scheduler stopped")

    def reclaim_expired(self) -> int:
        """
        Return jobs of crashed or stuck workers to the queue.

        A reclaimed job that still has retries brings a failed message back
        to 'scheduled'. Jobs with no retries left are discarded and their
        message is marked failed.

        Returns:
            Number of jobs reclaimed
        """
        now = self.clock()
        try:
            reclaimed = self.queue.reclaim_expired(now)
            for job in reclaimed:
                if job.state is JobState.DISCARDED:
                    self._mark_failed(job.message_id, now)
                    logger.error(
                        f"[message:{job.message_id}] "
                        f"{AttemptsExhausted(job.message_id, job.attempt, job.last_error)}"
                    )
                else:
                    self._resurrect(job.message_id, now)
        except StorageUnavailable as e:
            logger.warning(f"[lease-reaper] Skipping cycle: {e}")
            return 0
        return len(reclaimed)

    def _mark_failed(self, message_id: str, now: datetime):
        try:
            message = self.store.find_by_id(message_id)
        except MessageNotFound:
            return
        if message.status is MessageStatus.SCHEDULED:
            self.store.update(
                lifecycle.transition(message, MessageStatus.FAILED, now=now),
                expected_status=MessageStatus.SCHEDULED,
                expected_deliver_at=message.deliver_at,
            )

    def run_pending(self) -> int:
        """
        Drain every due job on the calling thread.

        Returns:
            Number of jobs processed
        """
        self.reclaim_expired()
        return self._drain("inline")

    def _drain(self, worker: str) -> int:
        processed = 0
        while not self._stopping.is_set():
            try:
                job = self.queue.lease(self.clock())
                if job is None:
                    break
                self._execute(job, worker)
            except StorageUnavailable as e:
                logger.warning(f"[{worker}] Storage unavailable, waiting for next cycle: {e}")
                break
            processed += 1
        return processed

    def _execute(self, job: Job, worker: str):
        logger.info(
            f"[{worker}] Job {job.id} for message {job.message_id} "
            f"(retry {job.attempt}/{job.max_attempts})"
        )
        try:
            outcome = self.processor.process(job.message_id)
        except MessageNotFound as e:
            logger.warning(f"[{worker}] {e}; discarding job {job.id}")
            self.queue.fail(job, str(e), self.clock(), retryable=False)
        except SendFailed as e:
            self._handle_failure(job, e.detail, e.retryable)
        except (InvalidTimezone, InvalidTransition) as e:
            self._handle_failure(job, str(e), retryable=False)
        else:
            self.queue.complete(job, self.clock(), follow_up_at=outcome.next_delivery_at)

    def _handle_failure(self, job: Job, detail: str, retryable: bool):
        now = self.clock()
        updated = self.queue.fail(job, detail, now, retryable=retryable)
        if updated is None:
            return

        if updated.state is JobState.RETRYABLE:
            self._resurrect(job.message_id, now)
        elif retryable:
            logger.error(f"[message:{job.message_id}] {AttemptsExhausted(job.message_id, job.attempt, detail)}")

    def _resurrect(self, message_id: str, now: datetime):
        """Put a failed message back to 'scheduled' while its retry is pending."""
        try:
            message = self.store.find_by_id(message_id)
        except MessageNotFound:
            return
        if message.status is not MessageStatus.FAILED:
            return
        resurrected = self.store.update(
            lifecycle.transition(message, MessageStatus.SCHEDULED, now=now),
            expected_status=MessageStatus.FAILED,
            expected_deliver_at=message.deliver_at,
        )
        if resurrected is not None:
            logger.info(f"[message:{message_id}] Awaiting retry")

    def _establish(self, message: Message) -> ScheduleHandle:
        job = self.queue.enqueue(message.id, message.deliver_at, now=self.clock())
        return ScheduleHandle(
            message_id=message.id,
            scheduled_for=job.scheduled_at,
            schedule_id=str(job.id),
            mode=self.mode,
            status=job.state.value,
        )

    def _withdraw(self, message: Message) -> bool:
        return self.queue.cancel_for_message(message.id, now=self.clock()) > 0

    def list_scheduled(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[ScheduledMessage]:
        for job in self.queue.list_active(start, end):
            yield ScheduledMessage(
                message_id=job.message_id,
                scheduled_for=job.scheduled_at,
                schedule_id=str(job.id),
                status=job.state.value,
                created_at=job.created_at,
                attempt=job.attempt,
            )
