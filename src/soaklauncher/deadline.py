"""Overall time budget shared by every stage of a run."""
from __future__ import annotations

import time
from typing import Callable, Optional

from soaklauncher.errors import DeadlineExceeded


class Deadline:
    """A fixed point in time after which the run is abandoned."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds <= 0:
            raise ValueError("seconds must be positive")
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, what: str = "run") -> None:
        """Raise DeadlineExceeded if no time is left."""
        if self.expired:
            raise DeadlineExceeded(f"Deadline of {self.seconds:.0f}s exceeded during {what}")

    def clip(self, timeout: Optional[float], what: str = "run") -> float:
        """Return ``timeout`` shortened to the remaining budget."""
        self.check(what)
        remaining = self.remaining()
        return remaining if timeout is None else min(timeout, remaining)
