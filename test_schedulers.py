"""
Tests for the queue-backed and polling schedulers.

Worker cycles are driven synchronously through run_pending() / poll_once()
with the shared test clock; only the start/stop tests use real threads.
"""

import time
from datetime import timedelta

import pytest
from sqlalchemy import delete

from courier.config import SchedulerConfig
from courier.errors import InvalidTransition, MessageNotFound, StorageUnavailable
from courier.models import JobState, MessageStatus, UserProfile
from courier.polling import PollingScheduler
from courier.queue import JobQueue
from courier.queue_scheduler import QueueScheduler
from courier.service import create_scheduler
from courier.store import messages


@pytest.fixture
def queue_scheduler(store, processor, clock):
    queue = JobQueue(store.engine, max_attempts=5)
    return QueueScheduler(store, processor, queue, workers=2, poll_interval=0.05, clock=clock)


@pytest.fixture
def polling_scheduler(store, processor, clock):
    return PollingScheduler(store, processor, interval_seconds=0.05, batch_size=10, clock=clock)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestQueueScheduler:

    def test_schedule_is_idempotent(self, queue_scheduler, make_message, clock):
        message = make_message()
        first = queue_scheduler.schedule(message.id, message.deliver_at)
        second = queue_scheduler.schedule(message.id, message.deliver_at)

        pending = list(queue_scheduler.list_scheduled())
        assert len(pending) == 1
        assert pending[0].schedule_id == second.schedule_id != first.schedule_id
        assert second.mode == "queue"

    def test_reschedule_moves_the_only_job(self, queue_scheduler, store, make_message, clock):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        later = clock.now + timedelta(days=2)

        handle = queue_scheduler.reschedule(message.id, later)

        assert handle.scheduled_for == later
        assert store.find_by_id(message.id).deliver_at == later
        assert [p.scheduled_for for p in queue_scheduler.list_scheduled()] == [later]

    def test_schedule_unknown_message(self, queue_scheduler, clock):
        with pytest.raises(MessageNotFound):
            queue_scheduler.schedule("missing", clock.now)

    def test_schedule_refuses_terminal_message(self, queue_scheduler, store, make_message, clock):
        message = make_message()
        store.update(message.replaced(status=MessageStatus.DELIVERED))
        with pytest.raises(InvalidTransition):
            queue_scheduler.schedule(message.id, clock.now + timedelta(hours=1))

    def test_delivers_when_due(self, queue_scheduler, store, sender, make_message, clock):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)

        assert queue_scheduler.run_pending() == 0
        clock.set(message.deliver_at)
        assert queue_scheduler.run_pending() == 1

        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED
        assert len(sender.sent) == 1
        assert list(queue_scheduler.list_scheduled()) == []
        assert queue_scheduler.run_pending() == 0

    def test_recurring_delivery_enqueues_follow_up(self, queue_scheduler, store, make_message, clock):
        message = make_message(recurrence="daily", timezone="America/New_York")
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        queue_scheduler.run_pending()

        pending = list(queue_scheduler.list_scheduled())
        assert len(pending) == 1
        assert pending[0].scheduled_for == message.deliver_at + timedelta(days=1)
        stored = store.find_by_id(message.id)
        assert stored.status is MessageStatus.SCHEDULED
        assert stored.deliver_at == pending[0].scheduled_for

    def test_always_failing_sender_exhausts_retries(self, queue_scheduler, store, sender, make_message, clock):
        sender.always_fail = True
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        gaps = []
        for retry in range(1, 6):
            queue_scheduler.run_pending()
            job = queue_scheduler.queue.active_job(message.id)
            assert job.state is JobState.RETRYABLE
            assert job.attempt == retry
            assert store.find_by_id(message.id).status is MessageStatus.SCHEDULED
            gaps.append(job.scheduled_at - clock.now)
            clock.set(job.scheduled_at)

        assert all(later > earlier for earlier, later in zip(gaps, gaps[1:]))

        queue_scheduler.run_pending()

        assert store.find_by_id(message.id).status is MessageStatus.FAILED
        assert queue_scheduler.queue.active_job(message.id) is None
        assert queue_scheduler.queue.jobs_for_message(message.id)[-1].state is JobState.DISCARDED
        assert len(sender.attempts) == 6

    def test_transient_failure_then_success(self, queue_scheduler, store, sender, make_message, clock):
        sender.fail_next = 1
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        queue_scheduler.run_pending()
        assert queue_scheduler.run_pending() == 0
        clock.advance(minutes=5)
        queue_scheduler.run_pending()

        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED
        logs = [entry.status for entry in store.find_delivery_logs(message.id)]
        assert logs == ["failed", "sent"]

    def test_opted_out_recipient_is_not_retried(self, queue_scheduler, store, sender, profile, make_message, clock):
        store.save_profile(UserProfile(profile.user_id, profile.email, email_notifications=False))
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        queue_scheduler.run_pending()

        assert store.find_by_id(message.id).status is MessageStatus.FAILED
        assert queue_scheduler.queue.jobs_for_message(message.id)[-1].state is JobState.DISCARDED

    def test_deleted_message_job_is_discarded(self, queue_scheduler, store, make_message, clock):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        with store.engine.begin() as conn:
            conn.execute(delete(messages).where(messages.c.id == message.id))
        clock.set(message.deliver_at)

        assert queue_scheduler.run_pending() == 1
        assert queue_scheduler.queue.jobs_for_message(message.id)[-1].state is JobState.DISCARDED

    def test_cancel_scheduled_message(self, queue_scheduler, store, sender, make_message, clock):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)

        assert queue_scheduler.cancel(message.id) is True

        assert store.find_by_id(message.id).status is MessageStatus.CANCELLED
        clock.set(message.deliver_at)
        assert queue_scheduler.run_pending() == 0
        assert sender.attempts == []

    def test_cancel_delivered_message_is_a_no_op(self, queue_scheduler, store, make_message, clock):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        queue_scheduler.run_pending()

        assert queue_scheduler.cancel(message.id) is False
        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED

    def test_cancel_during_retry_wait(self, queue_scheduler, store, sender, make_message, clock):
        sender.always_fail = True
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        queue_scheduler.run_pending()

        assert queue_scheduler.cancel(message.id) is True
        clock.advance(hours=1)
        assert queue_scheduler.run_pending() == 0
        assert store.find_by_id(message.id).status is MessageStatus.CANCELLED

    def test_manual_reschedule_of_failed_message(self, queue_scheduler, store, sender, profile, make_message, clock):
        store.save_profile(UserProfile(profile.user_id, profile.email, email_notifications=False))
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        queue_scheduler.run_pending()
        assert store.find_by_id(message.id).status is MessageStatus.FAILED

        store.save_profile(profile)
        queue_scheduler.schedule(message.id, clock.now)
        assert queue_scheduler.run_pending() == 1
        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED

    def test_list_scheduled_window(self, queue_scheduler, make_message, clock):
        soon = make_message()
        later = make_message(deliver_at=clock.now + timedelta(days=10))
        for message in (soon, later):
            queue_scheduler.schedule(message.id, message.deliver_at)

        window = list(queue_scheduler.list_scheduled(clock.now, clock.now + timedelta(days=1)))
        assert [item.message_id for item in window] == [soon.id]
        assert window[0].status == "available"

    def test_worker_pool_delivers_in_background(self, queue_scheduler, store, make_message, clock):
        messages_due = [make_message() for _ in range(4)]
        for message in messages_due:
            queue_scheduler.schedule(message.id, clock.now)

        queue_scheduler.start()
        try:
            assert queue_scheduler.running
            assert wait_for(lambda: all(
                store.find_by_id(m.id).status is MessageStatus.DELIVERED for m in messages_due
            ))
        finally:
            queue_scheduler.stop(wait=True)
        assert not queue_scheduler.running

    @pytest.mark.parametrize('recurrence', ["none", "daily"])
    def test_cancel_while_sending_wins(self, queue_scheduler, store, sender, make_message, clock, recurrence):
        message = make_message(recurrence=recurrence)
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        sender.during_send = lambda payload: queue_scheduler.cancel(payload.message_id)

        queue_scheduler.run_pending()

        assert len(sender.sent) == 1
        assert store.find_by_id(message.id).status is MessageStatus.CANCELLED
        assert list(queue_scheduler.list_scheduled()) == []

    def test_worker_crash_after_send_does_not_deliver_next_occurrence_early(
        self, queue_scheduler, store, sender, processor, make_message, clock
    ):
        message = make_message(recurrence="daily")
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        next_day = message.deliver_at + timedelta(days=1)

        # Worker sends, then dies before finishing its job
        assert queue_scheduler.queue.lease(clock.now) is not None
        processor.process(message.id)
        clock.advance(minutes=10)

        queue_scheduler.run_pending()

        assert len(sender.sent) == 1
        assert store.find_by_id(message.id).deliver_at == next_day
        assert [p.scheduled_for for p in queue_scheduler.list_scheduled()] == [next_day]

        clock.set(next_day)
        queue_scheduler.run_pending()
        assert len(sender.sent) == 2

    def test_job_whose_worker_keeps_dying_ends_failed(self, store, processor, make_message, clock):
        queue = JobQueue(store.engine, max_attempts=1, lease_timeout=timedelta(minutes=5))
        scheduler = QueueScheduler(store, processor, queue, workers=1, clock=clock)
        message = make_message()
        scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        for _ in range(2):
            assert queue.lease(clock.now) is not None
            clock.advance(minutes=6)
            assert scheduler.reclaim_expired() == 1

        assert store.find_by_id(message.id).status is MessageStatus.FAILED
        assert queue.jobs_for_message(message.id)[-1].state is JobState.DISCARDED
        assert queue.lease(clock.now) is None

    def test_storage_outage_skips_the_cycle(self, queue_scheduler, store, sender, make_message, clock, monkeypatch):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)

        def unavailable(now):
            raise StorageUnavailable("lease job failed: database is locked")

        monkeypatch.setattr(queue_scheduler.queue, "lease", unavailable)
        assert queue_scheduler.run_pending() == 0
        assert sender.attempts == []

        monkeypatch.undo()
        assert queue_scheduler.run_pending() == 1
        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED

    def test_failed_enqueue_leaves_failed_message_failed(
        self, queue_scheduler, store, profile, make_message, clock, monkeypatch
    ):
        store.save_profile(UserProfile(profile.user_id, profile.email, email_notifications=False))
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)
        clock.set(message.deliver_at)
        queue_scheduler.run_pending()
        failed = store.find_by_id(message.id)
        assert failed.status is MessageStatus.FAILED

        def unavailable(message_id, run_at, now=None):
            raise StorageUnavailable("enqueue failed: connection refused")

        monkeypatch.setattr(queue_scheduler.queue, "enqueue", unavailable)
        with pytest.raises(StorageUnavailable):
            queue_scheduler.schedule(message.id, clock.now + timedelta(hours=1))

        stored = store.find_by_id(message.id)
        assert stored.status is MessageStatus.FAILED
        assert stored.deliver_at == failed.deliver_at

    def test_failed_enqueue_keeps_previous_delivery_time(
        self, queue_scheduler, store, make_message, clock, monkeypatch
    ):
        message = make_message()
        queue_scheduler.schedule(message.id, message.deliver_at)

        def unavailable(message_id, run_at, now=None):
            raise StorageUnavailable("enqueue failed: connection refused")

        monkeypatch.setattr(queue_scheduler.queue, "enqueue", unavailable)
        with pytest.raises(StorageUnavailable):
            queue_scheduler.reschedule(message.id, clock.now + timedelta(days=2))
        monkeypatch.undo()

        assert store.find_by_id(message.id).deliver_at == message.deliver_at
        assert [p.scheduled_for for p in queue_scheduler.list_scheduled()] == [message.deliver_at]


class TestPollingScheduler:

    def test_poll_delivers_only_due_messages(self, polling_scheduler, store, sender, make_message, clock):
        due = make_message()
        not_due = make_message(deliver_at=clock.now + timedelta(days=1))
        clock.set(due.deliver_at)

        assert polling_scheduler.poll_once() == 1

        assert store.find_by_id(due.id).status is MessageStatus.DELIVERED
        assert store.find_by_id(not_due.id).status is MessageStatus.SCHEDULED
        assert polling_scheduler.poll_once() == 0
        assert len(sender.sent) == 1

    def test_failure_is_not_retried(self, polling_scheduler, store, sender, make_message, clock):
        sender.always_fail = True
        message = make_message()
        clock.set(message.deliver_at)

        assert polling_scheduler.poll_once() == 0
        clock.advance(hours=1)
        polling_scheduler.poll_once()

        assert store.find_by_id(message.id).status is MessageStatus.FAILED
        assert len(sender.attempts) == 1

    def test_recurring_message_is_sent_once_per_occurrence(self, polling_scheduler, store, sender, make_message, clock):
        message = make_message(recurrence="weekly")
        clock.set(message.deliver_at)

        polling_scheduler.poll_once()
        polling_scheduler.poll_once()

        assert len(sender.sent) == 1
        assert store.find_by_id(message.id).deliver_at == message.deliver_at + timedelta(days=7)

    def test_fan_out(self, store, processor, sender, make_message, clock):
        scheduler = PollingScheduler(store, processor, batch_size=10, fan_out=3, clock=clock)
        batch = [make_message() for _ in range(5)]
        clock.advance(hours=2)

        assert scheduler.poll_once() == 5
        assert {p.message_id for p in sender.sent} == {m.id for m in batch}

    def test_schedule_and_cancel(self, polling_scheduler, store, make_message, clock):
        message = make_message()
        handle = polling_scheduler.schedule(message.id, clock.now + timedelta(hours=3))
        assert handle.mode == "polling"
        assert store.find_by_id(message.id).deliver_at == clock.now + timedelta(hours=3)

        assert polling_scheduler.cancel(message.id) is True
        assert polling_scheduler.cancel(message.id) is False
        clock.advance(hours=4)
        assert polling_scheduler.poll_once() == 0

    def test_cancel_failed_message_reports_no_pending_intent(self, polling_scheduler, store, sender, make_message, clock):
        sender.always_fail = True
        message = make_message()
        clock.set(message.deliver_at)
        polling_scheduler.poll_once()

        assert polling_scheduler.cancel(message.id) is False
        assert store.find_by_id(message.id).status is MessageStatus.CANCELLED

    def test_reschedule_failed_message(self, polling_scheduler, store, sender, make_message, clock):
        sender.fail_next = 1
        message = make_message()
        clock.set(message.deliver_at)
        polling_scheduler.poll_once()

        polling_scheduler.reschedule(message.id, clock.now)
        assert polling_scheduler.poll_once() == 1
        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED

    def test_list_scheduled_window(self, polling_scheduler, make_message, clock):
        soon = make_message()
        make_message(deliver_at=clock.now + timedelta(days=10))

        window = list(polling_scheduler.list_scheduled(end=clock.now + timedelta(days=1)))
        assert [item.message_id for item in window] == [soon.id]
        assert window[0].schedule_id == f"poll:{soon.id}"

    def test_background_poll(self, polling_scheduler, store, make_message, clock):
        message = make_message()
        clock.set(message.deliver_at)

        polling_scheduler.start()
        try:
            assert wait_for(lambda: store.find_by_id(message.id).status is MessageStatus.DELIVERED)
        finally:
            polling_scheduler.stop()

    def test_storage_outage_skips_the_poll(self, polling_scheduler, store, sender, make_message, clock, monkeypatch):
        message = make_message()
        clock.set(message.deliver_at)

        def unavailable(instant, limit):
            raise StorageUnavailable("load due messages failed: database is locked")

        monkeypatch.setattr(store, "find_due_before", unavailable)
        assert polling_scheduler.poll_once() == 0
        assert sender.attempts == []

        monkeypatch.undo()
        assert polling_scheduler.poll_once() == 1
        assert store.find_by_id(message.id).status is MessageStatus.DELIVERED

    def test_cancel_while_sending_wins(self, polling_scheduler, store, sender, make_message, clock):
        message = make_message()
        clock.set(message.deliver_at)
        sender.during_send = lambda payload: polling_scheduler.cancel(payload.message_id)

        assert polling_scheduler.poll_once() == 0
        assert len(sender.sent) == 1
        assert store.find_by_id(message.id).status is MessageStatus.CANCELLED


class TestCreateScheduler:

    @pytest.fixture
    def config(self, tmp_path, monkeypatch):
        for name in ('COURIER_DATABASE_URL', 'COURIER_MODE', 'COURIER_WORKERS'):
            monkeypatch.delenv(name, raising=False)
        config = SchedulerConfig(str(tmp_path / "config.json"))
        config.database_url = f"sqlite:///{tmp_path / 'factory.db'}"
        return config

    @pytest.mark.parametrize("mode,expected", [
        ("queue", QueueScheduler),
        ("polling", PollingScheduler),
        ("auto", QueueScheduler),
    ])
    def test_mode_selection(self, config, sender, mode, expected):
        config.mode = mode
        scheduler = create_scheduler(config, sender=sender)
        assert isinstance(scheduler, expected)

    def test_queue_settings_are_applied(self, config, sender):
        config.mode = "queue"
        config.queue.workers = 3
        config.queue.max_attempts = 2
        config.queue.backoff.schedule_minutes = [1, 2]
        scheduler = create_scheduler(config, sender=sender)

        assert scheduler.workers == 3
        assert scheduler.queue.max_attempts == 2
        assert scheduler.queue.backoff.delay_for(2) == timedelta(minutes=2)

    def test_auto_falls_back_to_polling(self, config, sender, monkeypatch):
        def unavailable(*args, **kwargs):
            raise StorageUnavailable("job table unreachable")

        monkeypatch.setattr(QueueScheduler, "from_config", unavailable)

        config.mode = "auto"
        assert isinstance(create_scheduler(config, sender=sender), PollingScheduler)

        config.mode = "queue"
        with pytest.raises(StorageUnavailable):
            create_scheduler(config, sender=sender)
