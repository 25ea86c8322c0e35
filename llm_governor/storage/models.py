"""
Data models for the usage store.

Defines usage records and rolling spend counters.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.pricing import CostEstimate


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of a completed (or failed) request.

    Failed requests are recorded too: partial completions still consume
    tokens and must count against spend ceilings.
    """
    request_id: str
    user_id: str
    cost_estimate: CostEstimate
    success: bool
    timestamp: datetime


@dataclass
class SpendCounter:
    """Spend accumulated over a rolling window.

    The window resets lazily: callers roll it over on read or write once
    the clock has moved a full window past window_start.
    """
    window: timedelta
    window_start: datetime
    spent_usd: float = 0.0

    def is_expired(self, now: datetime) -> bool:
        return now - self.window_start >= self.window

    def roll_over(self, now: datetime) -> bool:
        """Reset the counter if its window has expired.

        Returns:
            True if the counter was reset
        """
        if self.is_expired(now):
            self.window_start = now
            self.spent_usd = 0.0
            return True
        return False

    def add(self, amount: float, now: datetime) -> None:
        self.roll_over(now)
        self.spent_usd += amount
