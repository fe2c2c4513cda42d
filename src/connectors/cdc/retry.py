"""
Retry/backoff policy shared by the checkpoint store operations.

The schedule is a value object so tests can inject a recording sleep instead of
waiting in real time.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_chain,
    wait_fixed,
    wait_random,
)

from .errors import TransientCheckpointError


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-schedule retry policy."""
    max_attempts: int = 3
    backoff_schedule: Tuple[float, ...] = (1.0, 2.0, 5.0)  # Delay before attempt 2, 3, ...
    jitter: float = 0.0  # Max random seconds added to each delay

    def __post_init__(self):
        """Validate policy values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.backoff_schedule:
            raise ValueError("backoff_schedule must not be empty")
        if any(delay < 0 for delay in self.backoff_schedule):
            raise ValueError("backoff_schedule delays must be non-negative")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")
        object.__setattr__(self, "backoff_schedule", tuple(float(d) for d in self.backoff_schedule))

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build a policy from ``CheckpointSettings``."""
        return cls(
            max_attempts=settings.max_attempts,
            backoff_schedule=tuple(settings.backoff_schedule),
            jitter=settings.jitter,
        )

    def delay_before(self, attempt: int) -> float:
        """Base delay (without jitter) slept before ``attempt`` (2-based)."""
        if attempt < 2:
            return 0.0
        index = min(attempt - 2, len(self.backoff_schedule) - 1)
        return self.backoff_schedule[index]

    @property
    def max_total_delay(self) -> float:
        """Upper bound on the time spent sleeping in one operation."""
        base = sum(self.delay_before(n) for n in range(2, self.max_attempts + 1))
        return base + self.jitter * (self.max_attempts - 1)

    def retrying(
        self,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
    ) -> Retrying:
        """Build a tenacity ``Retrying`` that retries only transient checkpoint errors.

        The last exception is re-raised once attempts are exhausted or
        ``cancel_event`` is set.
        """
        wait = wait_chain(*[wait_fixed(delay) for delay in self.backoff_schedule])
        if self.jitter:
            wait = wait + wait_random(0, self.jitter)

        stop = stop_after_attempt(self.max_attempts)
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)

        return Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type(TransientCheckpointError),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
