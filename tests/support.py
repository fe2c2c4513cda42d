"""Test doubles for time and connection providers."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingSleeper:
    """Sleep replacement that records requested delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FlakyProvider:
    """Connection provider returning None for the first ``failures`` calls."""

    def __init__(self, database, failures: int = 0, always_down: bool = False):
        self.database = database
        self.failures = failures
        self.always_down = always_down
        self.calls = 0

    def get_local_connection(self):
        self.calls += 1
        if self.always_down or self.calls <= self.failures:
            return None
        return self.database

    def is_available(self) -> bool:
        return self.get_local_connection() is not None
