"""
Request shaping for outbound appliance calls.

Components:
- RateLimiter: token bucket, full refill every window; waits, never rejects
- InFlightRequests: collapses concurrent identical calls into one
- with_timeout: bounds a single attempt; abandons (does not cancel) it on expiry
- with_retry: exponential backoff, surfaces the last attempt's error
- RequestGate: composes the above around one outbound call

Composition for a guarded call:
    de-dup check -> rate-limit acquire -> retry(timeout(attempt))

De-duplication is checked before acquiring a token so that callers joining
an outstanding request do not consume rate-limit capacity. Rate limiting
and de-duplication apply once per outer call, never per retry.
"""

import asyncio
import functools
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from .exceptions import RequestError, TimedOut

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 20
DEFAULT_WINDOW = 1.0  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0  # seconds


# =============================================================================
# RATE LIMITER - Token Bucket Algorithm
# =============================================================================

class RateLimiter:
    """
    Token bucket rate limiter.

    Allows ``capacity`` calls per ``window`` seconds. The bucket is refilled
    completely once a full window has elapsed since the last refill. Callers
    that find the bucket empty sleep until the window ends and try again.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")

        self.capacity = capacity
        self.window = window
        self._clock = clock
        self._sleep = sleep

        self._tokens = capacity
        self._last_refill = clock()

        # Stats
        self._granted = 0
        self._delayed = 0

    @property
    def tokens(self) -> int:
        return self._tokens

    async def acquire(self) -> None:
        """Take one token, suspending until one is available."""
        delayed = False

        while True:
            now = self._clock()
            elapsed = now - self._last_refill

            if elapsed >= self.window:
                self._tokens = self.capacity
                self._last_refill = now
                elapsed = 0.0

            if self._tokens > 0:
                self._tokens -= 1
                self._granted += 1
                return

            if not delayed:
                delayed = True
                self._delayed += 1

            wait = self.window - elapsed
            logger.debug(f"Rate limit reached, waiting {wait:.3f}s")
            await self._sleep(wait)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "capacity": self.capacity,
            "window": self.window,
            "tokens": self._tokens,
            "granted": self._granted,
            "delayed": self._delayed,
        }


# =============================================================================
# IN-FLIGHT DE-DUPLICATION
# =============================================================================

class InFlightRequests:
    """Tracks outstanding calls by key so identical calls share one result."""

    def __init__(self):
        self._pending: Dict[str, "asyncio.Task[Any]"] = {}
        self._joined = 0

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)

        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._release, key))
        else:
            self._joined += 1
            logger.debug(f"Joining in-flight request {key}")

        # Shield so one caller being cancelled does not cancel the shared call
        return await asyncio.shield(task)

    def _release(self, key: str, task: "asyncio.Task[Any]") -> None:
        # Removed on success and failure alike
        if self._pending.get(key) is task:
            del self._pending[key]

    def get_stats(self) -> Dict[str, int]:
        return {"pending": len(self._pending), "joined": self._joined}


# =============================================================================
# TIMEOUT / RETRY
# =============================================================================

def _discard_result(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Abandoned request finished with error: {error}")
    else:
        logger.debug("Abandoned request finished; result discarded")


async def with_timeout(awaitable: Awaitable[T], timeout: float) -> T:
    """
    Race an awaitable against a timer.

    On expiry the awaitable keeps running in the background and whatever it
    eventually produces is discarded.

    Raises:
        TimedOut: If the timer wins
    """
    task = asyncio.ensure_future(awaitable)

    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.add_done_callback(_discard_result)
    raise TimedOut(timeout)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_RETRY_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (RequestError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call ``operation`` up to ``max_retries + 1`` times.

    Waits ``base_delay * 2 ** attempt`` seconds between attempts. The error
    raised by the last attempt is re-raised.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt < max_retries:
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{max_retries + 1}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await sleep(delay)

    logger.error(f"All {max_retries + 1} attempts failed: {last_error}")
    raise last_error


# =============================================================================
# GATE
# =============================================================================

class RequestGate:
    """
    Fronts every outbound appliance call.

    Usage:
        gate = RequestGate(RateLimiter(), InFlightRequests())
        data = await gate.call(lambda: fetch(), key=gate.make_key("GET", url))
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        in_flight: InFlightRequests,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.in_flight = in_flight
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    @staticmethod
    def make_key(method: str, url: str, *params: Any) -> str:
        """Cache key for de-duplication: target plus parameters."""
        encoded = json.dumps(params, sort_keys=True, default=str) if params else ""
        return f"{method.upper()} {url} {encoded}".rstrip()

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        key: Optional[str] = None,
        retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``operation`` under rate limiting, timeout and retry.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            key: De-duplication key, or None to always issue the call
            retries: Override the configured retry count
            timeout: Override the configured per-attempt timeout
        """
        max_retries = self.max_retries if retries is None else retries
        attempt_timeout = self.timeout if timeout is None else timeout

        async def guarded() -> T:
            await self.rate_limiter.acquire()
            return await with_retry(
                lambda: with_timeout(operation(), attempt_timeout),
                max_retries=max_retries,
                base_delay=self.retry_base_delay,
                sleep=self._sleep,
            )

        if key is None:
            return await guarded()
        return await self.in_flight.run(key, guarded)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "rate_limiter": self.rate_limiter.get_stats(),
            "in_flight": self.in_flight.get_stats(),
        }
