"""
Courier - scheduled message delivery

Delivers user-authored messages at a future instant, retries failed sends
with backoff, and repeats recurring messages on their local wall-clock time.

Features:
- Message lifecycle state machine (scheduled, delivered, failed, cancelled)
- DST-safe recurrence (daily, weekly, monthly, yearly)
- Queue-backed scheduler: durable job table, one active job per message,
  bounded worker pool, leases, exponential backoff
- Polling scheduler fallback that scans the message store
- SQLAlchemy message store and pluggable delivery senders
"""

from courier.config import SchedulerConfig
from courier.models import Message, MessageStatus, UserProfile
from courier.processor import DeliveryProcessor
from courier.service import MessageScheduler, create_scheduler
from courier.queue_scheduler import QueueScheduler
from courier.polling import PollingScheduler
from courier.store import SQLMessageStore

__version__ = "0.1.0"
__all__ = [
    "SchedulerConfig",
    "Message",
    "MessageStatus",
    "UserProfile",
    "DeliveryProcessor",
    "MessageScheduler",
    "create_scheduler",
    "QueueScheduler",
    "PollingScheduler",
    "SQLMessageStore",
]
