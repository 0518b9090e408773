"""
Durable job table for the queue-backed scheduler.

One row per delivery attempt intent. A partial unique index on message_id
over the active states (available, running, retryable) guarantees at most
one active job per message, enforced by the database rather than in memory
so it holds across worker processes.

Leasing is a select of the earliest due job followed by a conditional update
keyed on its previous state. Every later write for that job is keyed on the
lease token, so a worker whose lease was reclaimed or superseded cannot
overwrite the new owner's row. An expired lease counts as a used attempt.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Union

from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from courier.backoff import BackoffPolicy
from courier.models import ACTIVE_JOB_STATES, Job, JobState, utcnow
from courier.recurrence import ensure_utc
from courier.store import UTCDateTime, make_engine, metadata, storage_errors

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LEASE_TIMEOUT = timedelta(minutes=5)

# Rows skipped when another worker wins the race for the same job
LEASE_CANDIDATES = 5
ENQUEUE_RETRIES = 3

jobs = Table(
    "delivery_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", String(36), nullable=False),
    Column("queue", String(64), nullable=False),
    Column("state", String(16), nullable=False),
    Column("attempt", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False),
    Column("scheduled_at", UTCDateTime, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("leased_until", UTCDateTime),
    Column("lease_token", String(36)),
    Column("last_error", Text),
    Column("finalized_at", UTCDateTime),
    Index("ix_delivery_jobs_fetch", "queue", "state", "scheduled_at"),
    Index("ix_delivery_jobs_message", "message_id"),
)

_ACTIVE_VALUES = [state.value for state in ACTIVE_JOB_STATES]

Index(
    "uq_delivery_jobs_active_message",
    jobs.c.message_id,
    unique=True,
    sqlite_where=jobs.c.state.in_(_ACTIVE_VALUES),
    postgresql_where=jobs.c.state.in_(_ACTIVE_VALUES),
)


class JobQueue:
    """
    Job table operations for one named queue.

    Args:
        engine: Engine instance or database URL
        name: Queue name jobs are inserted into and leased from
        max_attempts: Retries allowed per job before it is discarded
        backoff: Delay policy between retries
        lease_timeout: How long a running job may go without finishing
                       before it is reclaimed
        create_tables: Create the job table on construction
    """

    def __init__(
        self,
        engine: Union[Engine, str],
        name: str = DEFAULT_QUEUE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        lease_timeout: timedelta = DEFAULT_LEASE_TIMEOUT,
        create_tables: bool = True
    ):
        if max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        self.name = name
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy()
        self.lease_timeout = lease_timeout
        if create_tables:
            self.create_tables()

    def create_tables(self):
        with storage_errors("create job table"):
            metadata.create_all(self.engine, tables=[jobs])

    def _supersede(self, conn: Connection, message_id: str, now: datetime, keep_id: Optional[int] = None) -> int:
        query = (
            update(jobs)
            .where(jobs.c.message_id == message_id)
            .where(jobs.c.state.in_(_ACTIVE_VALUES))
        )
        if keep_id is not None:
            query = query.where(jobs.c.id != keep_id)
        result = conn.execute(query.values(
            state=JobState.CANCELLED.value,
            lease_token=None,
            leased_until=None,
            finalized_at=now,
        ))
        return result.rowcount

    def _insert(self, conn: Connection, message_id: str, run_at: datetime, now: datetime) -> Job:
        values = {
            'message_id': message_id,
            'queue': self.name,
            'state': JobState.AVAILABLE.value,
            'attempt': 0,
            'max_attempts': self.max_attempts,
            'scheduled_at': ensure_utc(run_at),
            'created_at': now,
        }
        result = conn.execute(insert(jobs).values(**values))
        return Job(id=result.inserted_primary_key[0], **{
            **values, 'state': JobState.AVAILABLE
        })

    def enqueue(self, message_id: str, run_at: datetime, now: Optional[datetime] = None) -> Job:
        """
        Make ``run_at`` the only active job for ``message_id``.

        Any existing active job (including a running one) is cancelled in the
        same transaction as the insert.

        Raises:
            StorageUnavailable: If the table cannot be reached
            IntegrityError: If concurrent enqueues keep colliding
        """
        now = ensure_utc(now) if now else utcnow()
        for attempt in range(1, ENQUEUE_RETRIES + 1):
            try:
                with storage_errors(f"enqueue {message_id}"):
                    with self.engine.begin() as conn:
                        superseded = self._supersede(conn, message_id, now)
                        job = self._insert(conn, message_id, run_at, now)
            except IntegrityError:
                if attempt == ENQUEUE_RETRIES:
                    raise
                logger.warning(f"[message:{message_id}] Concurrent enqueue, retrying ({attempt})")
                continue

            if superseded:
                logger.info(f"[message:{message_id}] Superseded {superseded} active job(s)")
            logger.info(
                f"[message:{message_id}] Job {job.id} queued for {job.scheduled_at.isoformat()}"
            )
            return job

    def lease(self, now: Optional[datetime] = None) -> Optional[Job]:
        """
        Claim the earliest due job, lowest attempt first.

        Returns:
            The leased job (state running), or None if nothing is due
        """
        now = ensure_utc(now) if now else utcnow()
        leased_until = now + self.lease_timeout

        with storage_errors("lease job"):
            for _ in range(LEASE_CANDIDATES):
                with self.engine.begin() as conn:
                    row = conn.execute(
                        select(jobs)
                        .where(jobs.c.queue == self.name)
                        .where(jobs.c.state.in_([JobState.AVAILABLE.value, JobState.RETRYABLE.value]))
                        .where(jobs.c.scheduled_at <= now)
                        .order_by(jobs.c.scheduled_at, jobs.c.attempt, jobs.c.id)
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    ).mappings().first()
                    if row is None:
                        return None

                    token = str(uuid.uuid4())
                    result = conn.execute(
                        update(jobs)
                        .where(jobs.c.id == row['id'])
                        .where(jobs.c.state == row['state'])
                        .values(
                            state=JobState.RUNNING.value,
                            lease_token=token,
                            leased_until=leased_until,
                        )
                    )
                if result.rowcount == 1:
                    job = Job.from_row(row)
                    return replace(
                        job,
                        state=JobState.RUNNING,
                        lease_token=token,
                        leased_until=leased_until,
                    )
                logger.debug(f"Job {row['id']} was claimed by another worker")
        return None

    def _owned(self, job: Job):
        return (
            update(jobs)
            .where(jobs.c.id == job.id)
            .where(jobs.c.state == JobState.RUNNING.value)
            .where(jobs.c.lease_token == job.lease_token)
        )

    def complete(
        self,
        job: Job,
        now: Optional[datetime] = None,
        follow_up_at: Optional[datetime] = None
    ) -> Optional[Job]:
        """
        Mark a leased job completed.

        With ``follow_up_at`` a fresh job for the same message is inserted in
        the same transaction; the completed row frees the unique slot first.

        Returns:
            The follow-up job, if one was inserted
        """
        now = ensure_utc(now) if now else utcnow()
        follow_up = None
        with storage_errors(f"complete job {job.id}"):
            with self.engine.begin() as conn:
                result = conn.execute(self._owned(job).values(
                    state=JobState.COMPLETED.value,
                    lease_token=None,
                    leased_until=None,
                    finalized_at=now,
                ))
                if result.rowcount != 1:
                    logger.warning(
                        f"[message:{job.message_id}] Lease on job {job.id} was lost before completion"
                    )
                    return None
                if follow_up_at is not None:
                    self._supersede(conn, job.message_id, now, keep_id=job.id)
                    follow_up = self._insert(conn, job.message_id, follow_up_at, now)

        if follow_up is not None:
            logger.info(
                f"[message:{job.message_id}] Job {job.id} completed, next job {follow_up.id} "
                f"queued for {follow_up.scheduled_at.isoformat()}"
            )
        else:
            logger.info(f"[message:{job.message_id}] Job {job.id} completed")
        return follow_up

    def fail(
        self,
        job: Job,
        error: str,
        now: Optional[datetime] = None,
        retryable: bool = True
    ) -> Optional[Job]:
        """
        Record a failed attempt.

        The job becomes retryable, scheduled after the backoff delay, while
        it has retries left and the error is retryable; otherwise it is
        discarded.

        Returns:
            The updated job, or None if the lease had been lost
        """
        now = ensure_utc(now) if now else utcnow()
        values = {
            'last_error': error,
            'lease_token': None,
            'leased_until': None,
        }
        if retryable and job.attempt < job.max_attempts:
            attempt = job.attempt + 1
            values.update(
                state=JobState.RETRYABLE.value,
                attempt=attempt,
                scheduled_at=now + self.backoff.delay_for(attempt),
            )
        else:
            values.update(state=JobState.DISCARDED.value, finalized_at=now)

        with storage_errors(f"fail job {job.id}"):
            with self.engine.begin() as conn:
                result = conn.execute(self._owned(job).values(**values))
        if result.rowcount != 1:
            logger.warning(f"[message:{job.message_id}] Lease on job {job.id} was lost before failure")
            return None

        updated = replace(job, **{**values, 'state': JobState(values['state'])})
        if updated.state is JobState.RETRYABLE:
            logger.warning(
                f"[message:{job.message_id}] Job {job.id} retry {updated.attempt}/{job.max_attempts} "
                f"at {updated.scheduled_at.isoformat()}: {error}"
            )
        else:
            logger.error(f"[message:{job.message_id}] Job {job.id} discarded: {error}")
        return updated

    def cancel_for_message(self, message_id: str, now: Optional[datetime] = None) -> int:
        """Cancel every active job of a message. Returns how many were cancelled."""
        now = ensure_utc(now) if now else utcnow()
        with storage_errors(f"cancel jobs of {message_id}"):
            with self.engine.begin() as conn:
                cancelled = self._supersede(conn, message_id, now)
        if cancelled:
            logger.info(f"[message:{message_id}] Cancelled {cancelled} active job(s)")
        return cancelled

    def reclaim_expired(self, now: Optional[datetime] = None) -> List[Job]:
        """
        Take back running jobs whose lease has expired.

        An expired lease counts as a used attempt: the job becomes retryable
        right away while it has retries left, otherwise it is discarded.

        Returns:
            The reclaimed jobs as updated
        """
        now = ensure_utc(now) if now else utcnow()
        reclaimed = []
        with storage_errors("reclaim expired leases"):
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(jobs)
                    .where(jobs.c.queue == self.name)
                    .where(jobs.c.state == JobState.RUNNING.value)
                    .where(jobs.c.leased_until < now)
                    .with_for_update(skip_locked=True)
                ).mappings().all()

                for row in rows:
                    job = Job.from_row(row)
                    values = {
                        'lease_token': None,
                        'leased_until': None,
                        'last_error': "lease expired before the job finished",
                    }
                    if job.attempt < job.max_attempts:
                        values.update(
                            state=JobState.RETRYABLE.value,
                            attempt=job.attempt + 1,
                            scheduled_at=now,
                        )
                    else:
                        values.update(state=JobState.DISCARDED.value, finalized_at=now)

                    result = conn.execute(self._owned(job).values(**values))
                    if result.rowcount == 1:
                        reclaimed.append(replace(job, **{**values, 'state': JobState(values['state'])}))

        for job in reclaimed:
            if job.state is JobState.DISCARDED:
                logger.error(f"[message:{job.message_id}] Job {job.id} discarded: {job.last_error}")
            else:
                logger.warning(
                    f"[message:{job.message_id}] Job {job.id} lease expired, "
                    f"retry {job.attempt}/{job.max_attempts}"
                )
        return reclaimed

    def active_job(self, message_id: str) -> Optional[Job]:
        with storage_errors(f"load active job of {message_id}"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(jobs)
                    .where(jobs.c.message_id == message_id)
                    .where(jobs.c.state.in_(_ACTIVE_VALUES))
                ).mappings().first()
        return Job.from_row(row) if row else None

    def list_active(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Iterator[Job]:
        """Active jobs of this queue scheduled within [start, end]."""
        query = (
            select(jobs)
            .where(jobs.c.queue == self.name)
            .where(jobs.c.state.in_(_ACTIVE_VALUES))
        )
        if start is not None:
            query = query.where(jobs.c.scheduled_at >= ensure_utc(start))
        if end is not None:
            query = query.where(jobs.c.scheduled_at <= ensure_utc(end))

        with storage_errors("list active jobs"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        for row in rows:
            yield Job.from_row(row)

    def jobs_for_message(self, message_id: str) -> List[Job]:
        """Every job ever created for a message, oldest first."""
        with storage_errors(f"load jobs of {message_id}"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(jobs)
                    .where(jobs.c.message_id == message_id)
                    .order_by(jobs.c.id)
                ).mappings().all()
        return [Job.from_row(row) for row in rows]
