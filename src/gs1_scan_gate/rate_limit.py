"""Simple in-memory per-identity rate limiter."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import threading
from time import monotonic


@dataclass
class RateLimiter:
    max_per_minute: int
    _events: dict[str, deque[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def allow(self, identity: str = "*") -> bool:
        if self.max_per_minute <= 0:
            return True
        now = monotonic()
        window_start = now - 60.0
        with self._lock:
            events = self._events.setdefault(identity, deque())
            while events and events[0] < window_start:
                events.popleft()
            if len(events) >= self.max_per_minute:
                return False
            events.append(now)
            return True
