import time
from abc import ABC, abstractmethod

__all__ = (
    "ClockSource",
    "ManualClock",
    "MonotonicClock",
)


class ClockSource(ABC):
    """Supplies monotonic seconds for visibility and retention arithmetic."""

    @abstractmethod
    def now(self) -> float:
        raise NotImplementedError


class MonotonicClock(ClockSource):
    def now(self) -> float:
        return time.monotonic()


class ManualClock(ClockSource):
    """Clock that only moves when told to.

    Example:
        >>> clock = ManualClock()
        >>> clock.advance(30)
        >>> clock.now()
        30.0
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        self._now += seconds
