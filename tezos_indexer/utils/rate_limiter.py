import threading
import time

from tezos_indexer.utils.context import Context


class TokenBucket:
    """Token bucket limiter shared by every caller of one TzKT client."""

    def __init__(self, rate_per_sec: float, burst: int):
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate_per_sec = rate_per_sec
        self.burst = burst
        self._tokens = float(burst)
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate_per_sec)
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def wait(self, ctx: Context) -> None:
        """Block until a token is available. Raises ContextDone if ctx finishes first."""
        while True:
            ctx.raise_if_done()
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait_in_secs = (1 - self._tokens) / self.rate_per_sec
            ctx.wait(wait_in_secs)
