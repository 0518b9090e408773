"""
Shared fixtures: a file-backed SQLite store, a controllable sender, a
settable clock and message/profile factories.
"""

from datetime import datetime, timedelta

import pytest

from courier.models import Message, SendResult, UserProfile
from courier.processor import DeliveryProcessor
from courier.recurrence import UTC
from courier.sender import DeliverySender
from courier.store import SQLMessageStore

START = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class Clock:
    """Callable clock tests move forward by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, instant: datetime) -> datetime:
        self.now = instant
        return self.now


class FakeSender(DeliverySender):
    """
    Records payloads and fails on demand.

    fail_next: number of upcoming sends that report failure
    always_fail: every send reports failure
    error: exception raised by every send
    during_send: called with the payload while the send is in flight
    """

    def __init__(self):
        self.attempts = []
        self.sent = []
        self.fail_next = 0
        self.always_fail = False
        self.error = None
        self.during_send = None

    def send(self, payload):
        self.attempts.append(payload)
        if self.during_send is not None:
            self.during_send(payload)
        if self.error is not None:
            raise self.error
        if self.always_fail or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            return SendResult(sent=False, detail="mailbox unavailable")
        self.sent.append(payload)
        return SendResult(sent=True, detail="accepted", provider_id=f"msg-{len(self.sent)}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path):
    return SQLMessageStore(f"sqlite:///{tmp_path / 'courier.db'}")


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def processor(store, sender, clock):
    return DeliveryProcessor(store, sender, clock=clock)


@pytest.fixture
def profile(store):
    return store.save_profile(UserProfile(
        user_id="user-1",
        email="ada@example.com",
        name="Ada",
        timezone="Europe/London",
    ))


@pytest.fixture
def make_message(store, clock, profile):
    """Create and store a valid message; keyword arguments override fields."""

    def _make(**overrides):
        fields = {
            'user_id': profile.user_id,
            'title': "Hello future me",
            'body': "Remember why you started.",
            'deliver_at': clock.now + timedelta(hours=1),
            'now': clock.now,
        }
        fields.update(overrides)
        return store.save(Message.create(**fields))

    return _make
