from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

from longform_tts.errors import RateLimitError
from longform_tts.utils.log import logger

T = TypeVar("T")

_RATE_LIMIT_CLASS_NAMES = {"TooManyRequests", "ResourceExhausted"}


def is_rate_limit_error(ex: BaseException) -> bool:
    """
    Provider signalled "too many requests" (HTTP 429 / gRPC RESOURCE_EXHAUSTED).
    """
    if isinstance(ex, RateLimitError):
        return True
    for attr in ("status_code", "code", "status"):
        v = getattr(ex, attr, None)
        if callable(v):
            continue
        if v == 429 or str(v) == "429":
            return True
    return any(cls.__name__ in _RATE_LIMIT_CLASS_NAMES for cls in type(ex).__mro__)


class RateLimiter:
    """
    Sliding-window throttle for outbound provider calls.

    At most `max_per_minute` admissions fall inside any trailing `window_s`
    window. Waiting is cooperative: other tasks keep running while an acquirer
    sleeps. `clock` and `sleep` are injectable so tests can run on virtual time.
    """

    def __init__(
        self,
        max_per_minute: int = 200,
        *,
        window_s: float = 60.0,
        margin_s: float = 0.1,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if int(max_per_minute) <= 0:
            raise ValueError("max_per_minute must be > 0")
        self.capacity = int(max_per_minute)
        self.window_s = float(window_s)
        self.margin_s = float(margin_s)
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_cap_s = float(backoff_cap_s)
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()

    @classmethod
    def from_settings(cls, s, **kwargs: Any) -> RateLimiter:
        return cls(
            int(s.requests_per_minute),
            margin_s=float(s.rate_margin_s),
            backoff_base_s=float(s.backoff_base_s),
            backoff_cap_s=float(s.backoff_cap_s),
            **kwargs,
        )

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window_s:
            self._stamps.popleft()

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            self._prune(now)
            # No await between the check and the append, so concurrent
            # acquirers on one loop cannot both take the last slot.
            if len(self._stamps) < self.capacity:
                self._stamps.append(now)
                return
            wait_s = self._stamps[0] + self.window_s - now + self.margin_s
            logger.debug("rate_limit_wait", wait_s=round(wait_s, 3), in_window=len(self._stamps))
            await self._sleep(max(0.0, wait_s))

    def backoff_s(self, attempt: int) -> float:
        return min(self.backoff_base_s * (2 ** max(0, int(attempt) - 1)), self.backoff_cap_s)

    async def run_with_retry(self, op: Callable[[], Awaitable[T]], max_attempts: int = 3) -> T:
        """
        Run `op` under the limiter, retrying only rate-limit-class failures with
        capped exponential backoff. Any other error propagates immediately.
        """
        attempts = max(1, int(max_attempts))
        last: BaseException | None = None
        for attempt in range(1, attempts + 1):
            await self.acquire()
            try:
                return await op()
            except Exception as ex:
                if not is_rate_limit_error(ex):
                    raise
                last = ex
                if attempt >= attempts:
                    break
                delay = self.backoff_s(attempt)
                logger.warning(
                    "rate_limited_retry",
                    attempt=attempt,
                    max_attempts=attempts,
                    delay_s=delay,
                    error=str(ex),
                )
                await self._sleep(delay)
        raise RateLimitError(f"Failed after {attempts} retries: {last}") from last
