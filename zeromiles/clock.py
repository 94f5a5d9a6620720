"""Trusted time source for request and claim timestamps."""

import threading
from datetime import datetime
from typing import Optional, Protocol

from zeromiles.types import utc_now


class Clock(Protocol):
    """Protocol for time sources."""

    def now(self) -> datetime:
        """Current UTC time. Never earlier than a previously returned value."""
        ...


class SystemClock:
    """Wall clock, clamped so it never runs backwards."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = utc_now()
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current
