"""Wall-clock budget shared by every loop of one sync invocation."""

import time
from typing import Callable


class TimeBudget:
    """Cooperative deadline for a sync invocation.

    Loops call ``exhausted()`` before starting their next unit of work.
    There is no preemption: work already started always finishes.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return self.seconds - self.elapsed()

    def exhausted(self, margin: float = 0.0) -> bool:
        """True once less than ``margin`` seconds remain."""
        return self.remaining() <= margin

    def __repr__(self) -> str:
        return f"TimeBudget(elapsed={self.elapsed():.1f}s, total={self.seconds}s)"
