"""
In-memory usage repository.

Append-only store of usage records with lazy pruning. Process-local by
design: nothing here survives a restart.
"""

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional

from .models import UsageRecord

DEFAULT_RETENTION = timedelta(days=1)
DEFAULT_MAX_RECORDS = 10000


class UsageRepository:
    """Append-only, time-ordered store of usage records.

    Records older than the retention window are pruned lazily on append,
    and the oldest records are evicted once max_records is reached.
    """

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the repository.

        Args:
            retention: How long records are kept
            max_records: Maximum number of records held at once
            clock: Time source used for pruning
        """
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        self.retention = retention
        self.max_records = max_records
        self._clock = clock
        self._records: Deque[UsageRecord] = deque()
        self._lock = threading.Lock()

    def append(self, record: UsageRecord) -> None:
        """Append a record, pruning expired and excess records first."""
        with self._lock:
            self._prune(self._clock())
            while len(self._records) >= self.max_records:
                self._records.popleft()
            self._records.append(record)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        while self._records and self._records[0].timestamp < cutoff:
            self._records.popleft()

    def get_recent(self, user_id: Optional[str] = None, limit: int = 100) -> List[UsageRecord]:
        """Get recent records, newest first.

        Args:
            user_id: Optional filter for a specific user
            limit: Maximum number of records to return
        """
        with self._lock:
            records = list(self._records)
        if user_id is not None:
            records = [r for r in records if r.user_id == user_id]
        records.reverse()
        return records[:limit]

    def get_between(self, start: datetime, end: datetime) -> List[UsageRecord]:
        """Get records with start <= timestamp <= end, oldest first."""
        with self._lock:
            return [r for r in self._records if start <= r.timestamp <= end]

    def count_by_user(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for record in self._records:
                counts[record.user_id] = counts.get(record.user_id, 0) + 1
            return counts

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
