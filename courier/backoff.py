"""
Retry backoff for failed deliveries.

Default schedule is 5, 15, 45, 135, 405 minutes (x3 per retry). Retries past
the end of the table keep multiplying the last delay.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

DEFAULT_SCHEDULE_MINUTES = [5, 15, 45, 135, 405]


@dataclass
class BackoffPolicy:
    """Maps a 1-based retry number to the delay before that retry runs."""
    schedule_minutes: List[float] = field(default_factory=lambda: list(DEFAULT_SCHEDULE_MINUTES))
    multiplier: float = 3.0

    def __post_init__(self):
        if not self.schedule_minutes:
            raise ValueError("backoff schedule cannot be empty")
        if any(m <= 0 for m in self.schedule_minutes):
            raise ValueError("backoff delays must be positive")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")

    def delay_for(self, retry: int) -> timedelta:
        """
        Delay before the given retry.

        Args:
            retry: Retry number, starting at 1 for the first retry

        Returns:
            Delay as a timedelta
        """
        if retry < 1:
            raise ValueError(f"retry number must be >= 1, got {retry}")

        if retry <= len(self.schedule_minutes):
            minutes = self.schedule_minutes[retry - 1]
        else:
            extra = retry - len(self.schedule_minutes)
            minutes = self.schedule_minutes[-1] * (self.multiplier ** extra)
        return timedelta(minutes=minutes)
