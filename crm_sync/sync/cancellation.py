"""Cooperative cancellation checked by the orchestrator between records."""

from __future__ import annotations

import threading
import time
from typing import Callable


class CancellationToken:
    """
    A cancel flag with an optional deadline.

    Records already in flight always finish; the check happens before the
    next record starts.
    """

    def __init__(self, *, deadline: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._clock = clock
        self.reason: str | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None, *, clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        if seconds is None:
            return cls(clock=clock)
        return cls(deadline=clock() + float(seconds), clock=clock)

    def cancel(self, reason: str | None = None) -> None:
        if reason and not self.reason:
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False


__all__ = ["CancellationToken"]
