from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

GEOCODE_SERVICE = "geocode"


class RateLimiter:
    """Enforce a minimum spacing between calls to each outbound service.

    ``acquire(service_id)`` blocks until ``min_interval`` seconds have passed
    since the previous granted acquisition for that service. There is one
    clock per service and no burst allowance. It never fails; it only waits.
    """

    def __init__(
        self,
        intervals: Optional[Mapping[str, float]] = None,
        *,
        default_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.intervals: Dict[str, float] = dict(intervals or {})
        self.default_interval = default_interval
        self._clock = clock
        self._sleep = sleep
        self._last_granted: Dict[str, float] = {}
        self._lock = threading.Lock()

    def min_interval(self, service_id: str) -> float:
        return self.intervals.get(service_id, self.default_interval)

    def acquire(self, service_id: str) -> float:
        """Wait for the service's slot; returns the seconds spent waiting."""
        interval = self.min_interval(service_id)
        # Holding the lock while sleeping serialises concurrent callers, so
        # each one is spaced from the grant before it.
        with self._lock:
            waited = 0.0
            last = self._last_granted.get(service_id)
            if last is not None:
                due = last + interval
                now = self._clock()
                if due > now:
                    waited = due - now
                    logger.debug(
                        "Rate limiter waiting",
                        extra={"service": service_id, "wait_sec": round(waited, 3)},
                    )
                    self._sleep(waited)
            self._last_granted[service_id] = self._clock()
            return waited


_default_limiter: Optional[RateLimiter] = None
_default_lock = threading.Lock()


def default_rate_limiter() -> RateLimiter:
    """Process-wide limiter shared by every run in this process."""
    global _default_limiter
    with _default_lock:
        if _default_limiter is None:
            _default_limiter = RateLimiter(
                {GEOCODE_SERVICE: float(getattr(settings, "GEOCODER_MIN_INTERVAL_SEC", 1.0))}
            )
        return _default_limiter
