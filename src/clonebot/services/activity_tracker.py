from __future__ import annotations

import time
from typing import Callable


class ActivityTracker:
    """
    Remembers when the clone engine last made progress.

    A long gap since the last touch is taken as a sign the platform session has
    degraded. Not thread-safe; everything runs on the bot's event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.last_activity_at = clock()

    def touch(self) -> None:
        self.last_activity_at = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self.last_activity_at

    def is_stale(self, threshold_sec: float) -> bool:
        return self.elapsed() > threshold_sec
