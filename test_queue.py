"""
Tests for the durable job table.
"""

from datetime import timedelta

import pytest
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from courier.backoff import BackoffPolicy
from courier.models import JobState
from courier.queue import JobQueue, jobs


@pytest.fixture
def queue(store):
    return JobQueue(store.engine, max_attempts=5, lease_timeout=timedelta(minutes=5))


def active_jobs(queue, message_id):
    return [job for job in queue.jobs_for_message(message_id) if job.is_active]


def test_enqueue_twice_leaves_one_active_job(queue, clock):
    first = queue.enqueue("m-1", clock.now + timedelta(hours=1), now=clock.now)
    second = queue.enqueue("m-1", clock.now + timedelta(hours=1), now=clock.now)

    assert [job.id for job in active_jobs(queue, "m-1")] == [second.id]
    states = {job.id: job.state for job in queue.jobs_for_message("m-1")}
    assert states[first.id] is JobState.CANCELLED


def test_unique_active_job_is_enforced_by_the_database(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)

    with pytest.raises(IntegrityError):
        with queue.engine.begin() as conn:
            conn.execute(insert(jobs).values(
                message_id="m-1",
                queue="default",
                state=JobState.RETRYABLE.value,
                attempt=0,
                max_attempts=5,
                scheduled_at=clock.now,
                created_at=clock.now,
            ))


def test_finished_jobs_do_not_block_new_ones(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    job = queue.lease(clock.now)
    queue.complete(job, clock.now)

    queue.enqueue("m-1", clock.now + timedelta(days=1), now=clock.now)
    assert len(active_jobs(queue, "m-1")) == 1


def test_lease_waits_until_due(queue, clock):
    queue.enqueue("m-1", clock.now + timedelta(minutes=10), now=clock.now)

    assert queue.lease(clock.now) is None

    job = queue.lease(clock.advance(minutes=10))
    assert job.state is JobState.RUNNING
    assert job.lease_token
    assert job.leased_until == clock.now + timedelta(minutes=5)
    assert queue.lease(clock.now) is None


def test_lease_prefers_earliest_then_lowest_attempt(queue, clock):
    queue.enqueue("late", clock.now - timedelta(minutes=1), now=clock.now)
    queue.enqueue("early", clock.now - timedelta(minutes=30), now=clock.now)
    queue.enqueue("future", clock.now + timedelta(minutes=30), now=clock.now)

    order = []
    while True:
        job = queue.lease(clock.now)
        if job is None:
            break
        order.append(job.message_id)
    assert order == ["early", "late"]


def test_lease_ignores_other_queues(store, queue, clock):
    other = JobQueue(store.engine, name="bulk")
    other.enqueue("m-1", clock.now, now=clock.now)
    assert queue.lease(clock.now) is None
    assert other.lease(clock.now).message_id == "m-1"


def test_complete_with_follow_up(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    job = queue.lease(clock.now)

    follow_up = queue.complete(job, clock.now, follow_up_at=clock.now + timedelta(days=1))

    assert follow_up.state is JobState.AVAILABLE
    assert follow_up.scheduled_at == clock.now + timedelta(days=1)
    history = queue.jobs_for_message("m-1")
    assert [j.state for j in history] == [JobState.COMPLETED, JobState.AVAILABLE]
    assert history[0].finalized_at == clock.now


def test_retries_follow_backoff_then_discard(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    scheduled = []

    for _ in range(5):
        job = queue.lease(clock.now)
        failed = queue.fail(job, "mailbox unavailable", clock.now)
        assert failed.state is JobState.RETRYABLE
        scheduled.append(failed.scheduled_at - clock.now)
        clock.set(failed.scheduled_at)

    assert scheduled == [timedelta(minutes=m) for m in (5, 15, 45, 135, 405)]

    job = queue.lease(clock.now)
    assert job.attempt == 5
    discarded = queue.fail(job, "mailbox unavailable", clock.now)
    assert discarded.state is JobState.DISCARDED
    assert active_jobs(queue, "m-1") == []


def test_non_retryable_failure_discards_immediately(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    job = queue.lease(clock.now)

    failed = queue.fail(job, "recipient opted out", clock.now, retryable=False)

    assert failed.state is JobState.DISCARDED
    assert failed.attempt == 0
    assert failed.last_error == "recipient opted out"


def test_custom_backoff_policy(store, clock):
    queue = JobQueue(store.engine, max_attempts=1, backoff=BackoffPolicy([2]))
    queue.enqueue("m-1", clock.now, now=clock.now)
    failed = queue.fail(queue.lease(clock.now), "boom", clock.now)
    assert failed.scheduled_at == clock.now + timedelta(minutes=2)


def test_superseded_running_job_loses_its_lease(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    job = queue.lease(clock.now)

    queue.enqueue("m-1", clock.now + timedelta(hours=2), now=clock.now)

    assert queue.complete(job, clock.now, follow_up_at=clock.now + timedelta(days=1)) is None
    assert queue.fail(job, "late failure", clock.now) is None
    active = active_jobs(queue, "m-1")
    assert len(active) == 1
    assert active[0].scheduled_at == clock.now + timedelta(hours=2)


def test_expired_lease_is_reclaimed(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    stale = queue.lease(clock.now)

    assert queue.reclaim_expired(clock.advance(minutes=4)) == []
    [reclaimed] = queue.reclaim_expired(clock.advance(minutes=2))
    assert reclaimed.state is JobState.RETRYABLE
    assert reclaimed.attempt == 1

    fresh = queue.lease(clock.now)
    assert fresh.id == stale.id
    assert fresh.attempt == 1
    assert fresh.lease_token != stale.lease_token
    assert queue.complete(stale, clock.now) is None
    assert queue.complete(fresh, clock.now) is None
    assert queue.jobs_for_message("m-1")[0].state is JobState.COMPLETED


def test_repeatedly_expiring_lease_is_eventually_discarded(store, clock):
    queue = JobQueue(store.engine, max_attempts=2, lease_timeout=timedelta(minutes=5))
    queue.enqueue("m-1", clock.now, now=clock.now)

    states = []
    for _ in range(3):
        assert queue.lease(clock.now) is not None
        [reclaimed] = queue.reclaim_expired(clock.advance(minutes=6))
        states.append(reclaimed.state)

    assert states == [JobState.RETRYABLE, JobState.RETRYABLE, JobState.DISCARDED]
    assert queue.active_job("m-1") is None
    assert queue.lease(clock.now) is None
    assert queue.jobs_for_message("m-1")[0].last_error == "lease expired before the job finished"


def test_cancel_for_message(queue, clock):
    queue.enqueue("m-1", clock.now, now=clock.now)
    assert queue.cancel_for_message("m-1", clock.now) == 1
    assert queue.cancel_for_message("m-1", clock.now) == 0
    assert queue.active_job("m-1") is None


def test_list_active_window(queue, clock):
    queue.enqueue("soon", clock.now + timedelta(hours=1), now=clock.now)
    queue.enqueue("later", clock.now + timedelta(days=3), now=clock.now)

    window = list(queue.list_active(clock.now, clock.now + timedelta(days=1)))
    assert [job.message_id for job in window] == ["soon"]
    assert {job.message_id for job in queue.list_active()} == {"soon", "later"}
