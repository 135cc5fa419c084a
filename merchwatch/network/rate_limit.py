from __future__ import annotations

import threading
import time
from typing import Callable
from urllib.parse import urlsplit


class HostRateLimiter:
    """Enforces a minimum interval between requests to the same host.

    ``wait_for`` returns how long the caller has to sleep before the next
    request; the slot is reserved immediately so concurrent callers queue up.
    """

    def __init__(
        self,
        min_interval_sec: float,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.min_interval_sec = max(0.0, float(min_interval_sec))
        self._clock = clock or time.monotonic
        self._next_slot: dict[str, float] = {}
        self._lock = threading.Lock()

    def wait_for(self, url: str) -> float:
        host = (urlsplit(url).hostname or "").lower()
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, now))
            self._next_slot[host] = slot + self.min_interval_sec
            return slot - now
