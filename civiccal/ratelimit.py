"""Process-local sliding-window rate limiting."""

from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """Allow at most ``max_attempts`` per identifier within ``window_seconds``.

    State lives in this object only; separate processes each keep their own
    history, so the limit is advisory rather than a security control. Request
    threads and the scheduler's prune job share one instance, so every access
    to the history goes through ``_lock``.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _recent(self, identifier: str, now: float) -> list[float]:
        history = self._attempts.get(identifier, [])
        return [stamp for stamp in history if now - stamp < self.window_seconds]

    def is_allowed(self, identifier: str) -> bool:
        """Record an attempt and return True unless the window is already full."""
        with self._lock:
            now = self._clock()
            recent = self._recent(identifier, now)
            if len(recent) >= self.max_attempts:
                self._attempts[identifier] = recent
                return False
            recent.append(now)
            self._attempts[identifier] = recent
            return True

    def remaining_time(self, identifier: str) -> float:
        """Seconds until the oldest retained attempt leaves the window."""
        with self._lock:
            now = self._clock()
            recent = self._recent(identifier, now)
        if not recent:
            return 0.0
        return max(0.0, self.window_seconds - (now - min(recent)))

    def prune(self) -> int:
        """Forget identifiers whose attempts have all expired."""
        with self._lock:
            now = self._clock()
            stale = [key for key in self._attempts if not self._recent(key, now)]
            for key in stale:
                del self._attempts[key]
        return len(stale)

    def reset(self, identifier: str | None = None) -> None:
        with self._lock:
            if identifier is None:
                self._attempts.clear()
            else:
                self._attempts.pop(identifier, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)
