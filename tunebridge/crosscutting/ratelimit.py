import time
import logging
import threading
from typing import Callable, Optional, Sequence, TypeVar

from tunebridge.domain.errors import AuthorizationExpired, RateLimited, TemporaryFailure
from tunebridge.crosscutting.logging import log_with_fields


logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_BACKOFF_SEC = (1, 3, 5)


class RateLimiter:
    """Fixed-window request counter shared by every caller of one service.

    At most `ceiling` permits are granted per window. When the ceiling is reached,
    `acquire` sleeps for the remainder of the window and starts a new one.
    """

    def __init__(self, ceiling: int, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 name: str = 'default'):
        if ceiling <= 0:
            raise ValueError("ceiling must be positive")
        self.ceiling = ceiling
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._count = 0
        self._window_start = clock()

    @property
    def count(self) -> int:
        return self._count

    def acquire(self) -> None:
        # Holding the lock while sleeping keeps other callers queued behind the reset.
        with self._lock:
            now = self._clock()
            if now - self._window_start >= self.window_seconds:
                self._count = 0
                self._window_start = now

            if self._count >= self.ceiling:
                wait = self.window_seconds - (now - self._window_start)
                if wait > 0:
                    logger.info(f"[{self.name}] rate ceiling {self.ceiling} reached, waiting {wait:.2f}s")
                    self._sleep(wait)
                self._count = 0
                self._window_start = self._clock()

            self._count += 1


class RetryExecutor:
    """Runs outbound calls through a rate limiter with retry and one-shot credential refresh.

    Retries `RateLimited` and `TemporaryFailure` following `backoff` (seconds), then
    re-raises. `AuthorizationExpired` triggers `refresh()` once; a second expiry surfaces.
    Any other exception propagates immediately.
    """

    def __init__(self, service: str, limiter: Optional[RateLimiter] = None,
                 backoff: Sequence[float] = DEFAULT_BACKOFF_SEC,
                 refresh: Optional[Callable[[], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.service = service
        self.limiter = limiter
        self.backoff = tuple(backoff)
        self.refresh = refresh
        self._sleep = sleep

    def execute(self, fn: Callable[[], T], label: str = '') -> T:
        """Call `fn` until it succeeds or the retry policy is exhausted.

        Args:
            fn: Zero-argument callable performing exactly one outbound request
            label: Short operation name used in logs

        Returns:
            Whatever `fn` returns
        """
        label = label or self.service
        attempt = 0
        refreshed = False

        while True:
            if self.limiter is not None:
                self.limiter.acquire()
            try:
                return fn()
            except AuthorizationExpired:
                if refreshed or self.refresh is None:
                    raise
                refreshed = True
                logger.info(f"[{label}] access token expired, refreshing and retrying")
                self.refresh()
            except (RateLimited, TemporaryFailure) as e:
                status = getattr(e, 'status', None)
                if attempt >= len(self.backoff):
                    log_with_fields(logger, 'WARNING', f"[{label}] giving up after {attempt} retries",
                                    service=self.service, label=label, status=status)
                    raise
                wait = self.backoff[attempt]
                if isinstance(e, RateLimited):
                    wait = max(wait, e.retry_after_ms / 1000.0)
                attempt += 1
                log_with_fields(logger, 'WARNING',
                                f"[{label}] retrying after {wait}s due to status {status}",
                                service=self.service, label=label, status=status, attempt=attempt)
                self._sleep(wait)
