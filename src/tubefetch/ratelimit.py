"""Fixed-window request limiter keyed by client address."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int


class RateLimiter:
    """Allows ``max_requests`` per key within each ``window_s`` window.

    The window for a key starts at its first request and resets on the first
    request after it has elapsed.
    """

    def __init__(
        self,
        window_s: float = 60.0,
        max_requests: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_requests = max_requests
        self._clock = clock
        self._records: Dict[str, list] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "RateLimiter":
        return cls(window_s=config.rate_limit_window_s, max_requests=config.rate_limit_max)

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)

            if record is None or now - record[1] > self.window_s:
                self._records[key] = [1, now]
                return RateLimitDecision(True, self.max_requests - 1)

            if record[0] >= self.max_requests:
                return RateLimitDecision(False, 0)

            record[0] += 1
            return RateLimitDecision(True, self.max_requests - record[0])

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
