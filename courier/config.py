"""
Scheduler configuration management.

Handles loading, saving, and validating the delivery scheduler's
configuration. Values come from a JSON file, then environment variables
(a .env file in the working directory is honoured) override them.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from courier.backoff import DEFAULT_SCHEDULE_MINUTES

load_dotenv()

logger = logging.getLogger(__name__)

MODES = ('queue', 'polling', 'auto')


def get_data_dir() -> Path:
    """Get the data directory for the default database, PID and log files."""
    data_dir = os.environ.get('COURIER_DATA_DIR')
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".courier"


def _get_default_database_url() -> str:
    return f"sqlite:///{get_data_dir() / 'courier.db'}"


def _get_default_log_file() -> str:
    return str(get_data_dir() / "logs" / "courier.log")


@dataclass
class BackoffConfig:
    """Delay table between retries, in minutes."""
    schedule_minutes: List[float] = field(default_factory=lambda: list(DEFAULT_SCHEDULE_MINUTES))
    multiplier: float = 3.0  # applied past the end of the table


@dataclass
class QueueConfig:
    """Queue-backed scheduler settings."""
    name: str = "default"
    workers: int = 10
    max_attempts: int = 5
    poll_interval_seconds: float = 1.0
    lease_timeout_seconds: int = 300
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueConfig':
        data = dict(data)
        backoff = BackoffConfig(**data.pop('backoff', {}))
        return cls(backoff=backoff, **data)


@dataclass
class PollingConfig:
    """Polling scheduler settings."""
    interval_seconds: float = 60
    batch_size: int = 100
    fan_out: int = 1


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Configuration path priority:
    1. Explicit config_path argument
    2. COURIER_CONFIG_PATH environment variable
    3. Default: ~/.courier/config.json

    Environment overrides (applied after the file):
    COURIER_DATABASE_URL, COURIER_MODE, COURIER_WORKERS
    """

    DEFAULT_CONFIG_PATH = Path.home() / ".courier" / "config.json"

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('COURIER_CONFIG_PATH'):
            self.config_path = Path(os.environ['COURIER_CONFIG_PATH']).expanduser()
        else:
            self.config_path = self.DEFAULT_CONFIG_PATH

        self.mode: str = "auto"
        self.database_url: str = _get_default_database_url()
        self.sender: str = "courier.sender:LoggingSender"
        self.queue: QueueConfig = QueueConfig()
        self.polling: PollingConfig = PollingConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        self._apply_environment()

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            self.mode = data.get('mode', self.mode)
            self.database_url = data.get('database_url', self.database_url)
            self.sender = data.get('sender', self.sender)
            if 'queue' in data:
                self.queue = QueueConfig.from_dict(data['queue'])
            if 'polling' in data:
                self.polling = PollingConfig(**data['polling'])
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def _apply_environment(self):
        if os.environ.get('COURIER_DATABASE_URL'):
            self.database_url = os.environ['COURIER_DATABASE_URL']
        if os.environ.get('COURIER_MODE'):
            self.mode = os.environ['COURIER_MODE'].strip().lower()
        if os.environ.get('COURIER_WORKERS'):
            try:
                self.queue.workers = int(os.environ['COURIER_WORKERS'])
            except ValueError:
                logger.warning(f"Ignoring non-integer COURIER_WORKERS={os.environ['COURIER_WORKERS']!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode,
            'database_url': self.database_url,
            'sender': self.sender,
            'queue': asdict(self.queue),
            'polling': asdict(self.polling),
            'logging': asdict(self.logging),
        }

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.mode not in MODES:
            errors.append(f"'mode' must be one of {', '.join(MODES)}, got '{self.mode}'")
        if not self.database_url:
            errors.append("'database_url' cannot be empty")
        if ':' not in (self.sender or ''):
            errors.append("'sender' must look like 'package.module:Name'")

        queue = self.queue
        if not queue.name:
            errors.append("queue: 'name' cannot be empty")
        if queue.workers < 1:
            errors.append("queue: 'workers' must be at least 1")
        if queue.max_attempts < 0:
            errors.append("queue: 'max_attempts' cannot be negative")
        if queue.poll_interval_seconds <= 0:
            errors.append("queue: 'poll_interval_seconds' must be positive")
        if queue.lease_timeout_seconds <= 0:
            errors.append("queue: 'lease_timeout_seconds' must be positive")

        schedule = queue.backoff.schedule_minutes
        if not schedule:
            errors.append("queue.backoff: 'schedule_minutes' cannot be empty")
        elif any(m <= 0 for m in schedule):
            errors.append("queue.backoff: delays must be positive")
        elif any(b <= a for a, b in zip(schedule, schedule[1:])):
            errors.append("queue.backoff: 'schedule_minutes' must be strictly increasing")
        if queue.backoff.multiplier < 1:
            errors.append("queue.backoff: 'multiplier' must be >= 1")

        if self.polling.interval_seconds <= 0:
            errors.append("polling: 'interval_seconds' must be positive")
        if self.polling.batch_size < 1:
            errors.append("polling: 'batch_size' must be at least 1")
        if self.polling.fan_out < 1:
            errors.append("polling: 'fan_out' must be at least 1")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"logging: unknown level '{self.logging.level}'")

        return errors

    def __repr__(self):
        return f"SchedulerConfig(mode={self.mode}, path={self.config_path})"
