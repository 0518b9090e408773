"""
Message store collaborator.

MessageStore is the interface the scheduler consumes; SQLMessageStore is a
SQLAlchemy Core implementation that works against SQLite (default) or any
database SQLAlchemy supports. Every write is a whole-record replacement.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Union

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from courier.errors import MessageNotFound, StorageUnavailable
from courier.models import DeliveryLogEntry, Message, MessageStatus, UserProfile
from courier.recurrence import UTC, ensure_utc

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("name", String(255)),
    Column("timezone", String(64), nullable=False, default="UTC"),
    Column("notification_email", String(255)),
    Column("email_notifications", Boolean, nullable=False, default=True),
    Column("push_notifications", Boolean, nullable=False, default=True),
    Column("created_at", UTCDateTime, nullable=False),
)

messages = Table(
    "messages",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("title", String(200), nullable=False),
    Column("body", Text, nullable=False),
    Column("deliver_at", UTCDateTime, nullable=False),
    Column("timezone", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("channel", String(16), nullable=False),
    Column("recurrence", String(16), nullable=False),
    Column("reminder_minutes", Integer),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("delivered_at", UTCDateTime),
    Index("ix_messages_status_deliver_at", "status", "deliver_at"),
)

delivery_logs = Table(
    "delivery_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", String(36), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("error", Text),
    Column("attempted_at", UTCDateTime, nullable=False),
)


def make_engine(url: str) -> Engine:
    """
    Create an engine for ``url``.

    SQLite files get their parent directory created, WAL journaling and a
    busy timeout so worker threads can share them; in-memory SQLite shares a
    single connection across threads.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    database = parsed.database
    if not database or database == ":memory:":
        return create_engine(
            url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )

    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        url,
        connect_args={'check_same_thread': False, 'timeout': 30},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    return engine


@contextmanager
def storage_errors(operation: str):
    """Translate driver connectivity errors into StorageUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Storage error during {operation}: {e}")
        raise StorageUnavailable(f"{operation} failed: {e}") from e


class MessageStore(ABC):
    """Durable storage for messages, owner preferences and delivery logs."""

    @abstractmethod
    def find_by_id(self, message_id: str) -> Message:
        """Load one message. Raises MessageNotFound for unknown ids."""

    @abstractmethod
    def update(
        self,
        message: Message,
        expected_status: Optional[MessageStatus] = None,
        expected_deliver_at: Optional[datetime] = None
    ) -> Optional[Message]:
        """
        Replace the stored record with ``message``.

        With ``expected_status`` and/or ``expected_deliver_at`` the write only
        happens while the stored record still has those values.

        Returns:
            ``message``, or None if the stored record no longer matched

        Raises:
            MessageNotFound: If the id is unknown
        """

    @abstractmethod
    def find_due_before(self, instant: datetime, limit: int) -> List[Message]:
        """Scheduled messages whose delivery instant is at or before ``instant``."""

    @abstractmethod
    def find_by_status(self, status: MessageStatus, limit: int) -> List[Message]:
        """Messages currently in ``status``."""

    @abstractmethod
    def find_by_user_id(self, user_id: str, limit: int = 100, offset: int = 0) -> List[Message]:
        """Messages owned by ``user_id``, newest first."""

    @abstractmethod
    def find_profile(self, user_id: str) -> Optional[UserProfile]:
        """Delivery preferences of ``user_id``, or None if unknown."""

    @abstractmethod
    def log_delivery(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        """Append one delivery attempt record."""


def _message_values(message: Message) -> dict:
    return {
        'id': message.id,
        'user_id': message.user_id,
        'title': message.title,
        'body': message.body,
        'deliver_at': message.deliver_at,
        'timezone': message.timezone,
        'status': message.status.value,
        'channel': message.channel.value,
        'recurrence': message.recurrence.value,
        'reminder_minutes': message.reminder_minutes,
        'created_at': message.created_at,
        'updated_at': message.updated_at,
        'delivered_at': message.delivered_at,
    }


class SQLMessageStore(MessageStore):
    """
    MessageStore backed by SQLAlchemy Core.

    Args:
        engine: Engine instance or database URL
        create_tables: Create missing tables on construction
    """

    def __init__(self, engine: Union[Engine, str], create_tables: bool = True):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        if create_tables:
            self.create_tables()
        logger.info(f"Message store initialized: {self.engine.url.render_as_string(hide_password=True)}")

    def create_tables(self):
        with storage_errors("create message tables"):
            metadata.create_all(self.engine, tables=[users, messages, delivery_logs])

    def ping(self) -> bool:
        with storage_errors("ping"):
            with self.engine.connect() as conn:
                conn.execute(select(1))
        return True

    def save(self, message: Message) -> Message:
        """Insert a new message."""
        with storage_errors(f"save message {message.id}"):
            with self.engine.begin() as conn:
                conn.execute(insert(messages).values(**_message_values(message)))
        logger.debug(f"[message:{message.id}] Saved")
        return message

    def save_profile(self, profile: UserProfile, created_at: Optional[datetime] = None) -> UserProfile:
        """Insert or replace a user's delivery preferences."""
        values = {
            'email': profile.email,
            'name': profile.name,
            'timezone': profile.timezone,
            'notification_email': profile.notification_email,
            'email_notifications': profile.email_notifications,
            'push_notifications': profile.push_notifications,
        }
        with storage_errors(f"save profile {profile.user_id}"):
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(users).where(users.c.id == profile.user_id).values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(insert(users).values(
                        id=profile.user_id,
                        created_at=created_at or datetime.now(UTC),
                        **values
                    ))
        return profile

    def find_by_id(self, message_id: str) -> Message:
        with storage_errors(f"load message {message_id}"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(messages).where(messages.c.id == str(message_id))
                ).mappings().first()
        if row is None:
            raise MessageNotFound(message_id)
        return Message.from_row(row)

    def update(
        self,
        message: Message,
        expected_status: Optional[MessageStatus] = None,
        expected_deliver_at: Optional[datetime] = None
    ) -> Optional[Message]:
        values = _message_values(message)
        values.pop('id')
        query = update(messages).where(messages.c.id == message.id)
        if expected_status is not None:
            query = query.where(messages.c.status == expected_status.value)
        if expected_deliver_at is not None:
            query = query.where(messages.c.deliver_at == ensure_utc(expected_deliver_at))

        with storage_errors(f"update message {message.id}"):
            with self.engine.begin() as conn:
                result = conn.execute(query.values(**values))
                exists = result.rowcount > 0 or conn.execute(
                    select(messages.c.id).where(messages.c.id == message.id)
                ).first() is not None
        if not exists:
            raise MessageNotFound(message.id)
        if result.rowcount == 0:
            logger.info(f"[message:{message.id}] Changed concurrently, write skipped")
            return None
        logger.debug(f"[message:{message.id}] Stored status={message.status.value} "
                     f"deliver_at={message.deliver_at.isoformat()}")
        return message

    def _select_messages(self, query, operation: str) -> List[Message]:
        with storage_errors(operation):
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        return [Message.from_row(row) for row in rows]

    def find_due_before(self, instant: datetime, limit: int) -> List[Message]:
        query = (
            select(messages)
            .where(messages.c.status == MessageStatus.SCHEDULED.value)
            .where(messages.c.deliver_at <= ensure_utc(instant))
            .order_by(messages.c.deliver_at)
            .limit(limit)
        )
        return self._select_messages(query, "load due messages")

    def find_by_status(self, status: MessageStatus, limit: int) -> List[Message]:
        query = (
            select(messages)
            .where(messages.c.status == MessageStatus(status).value)
            .order_by(messages.c.deliver_at)
            .limit(limit)
        )
        return self._select_messages(query, f"load {MessageStatus(status).value} messages")

    def find_by_user_id(self, user_id: str, limit: int = 100, offset: int = 0) -> List[Message]:
        query = (
            select(messages)
            .where(messages.c.user_id == str(user_id))
            .order_by(messages.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return self._select_messages(query, f"load messages of user {user_id}")

    def find_profile(self, user_id: str) -> Optional[UserProfile]:
        with storage_errors(f"load profile {user_id}"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(users).where(users.c.id == str(user_id))
                ).mappings().first()
        return UserProfile.from_row(row) if row else None

    def log_delivery(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        with storage_errors(f"log delivery of {entry.message_id}"):
            with self.engine.begin() as conn:
                result = conn.execute(insert(delivery_logs).values(
                    message_id=entry.message_id,
                    status=entry.status,
                    error=entry.error,
                    attempted_at=entry.attempted_at,
                ))
        return DeliveryLogEntry(
            message_id=entry.message_id,
            status=entry.status,
            attempted_at=entry.attempted_at,
            error=entry.error,
            id=result.inserted_primary_key[0],
        )

    def find_delivery_logs(self, message_id: str) -> List[DeliveryLogEntry]:
        """Delivery attempts for one message, oldest first."""
        with storage_errors(f"load delivery logs of {message_id}"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(delivery_logs)
                    .where(delivery_logs.c.message_id == str(message_id))
                    .order_by(delivery_logs.c.id)
                ).mappings().all()
        return [
            DeliveryLogEntry(
                message_id=row['message_id'],
                status=row['status'],
                attempted_at=row['attempted_at'],
                error=row['error'],
                id=row['id'],
            )
            for row in rows
        ]
