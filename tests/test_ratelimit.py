from __future__ import annotations

import asyncio

import pytest

from longform_tts.errors import RateLimitError
from longform_tts.utils.ratelimit import RateLimiter, is_rate_limit_error
from tests._helpers.fakes import SimClock, TooManyRequests


def _limiter(clock: SimClock, per_minute: int, **kw) -> RateLimiter:
    return RateLimiter(per_minute, clock=clock, sleep=clock.sleep, **kw)


def _assert_window_bound(stamps: list[float], capacity: int, window: float = 60.0) -> None:
    stamps = sorted(stamps)
    for i in range(len(stamps) - capacity):
        assert stamps[i + capacity] - stamps[i] >= window


def test_sequential_calls_never_exceed_window() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 200)
    admitted: list[float] = []

    async def _run() -> None:
        for _ in range(250):
            await limiter.acquire()
            admitted.append(clock())

    asyncio.run(_run())

    assert len(admitted) == 250
    assert admitted[199] == 0.0
    assert admitted[200] >= 60.0
    _assert_window_bound(admitted, 200)


def test_two_per_minute_five_calls_take_two_minutes() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 2)
    admitted: list[float] = []

    async def op() -> None:
        admitted.append(clock())

    async def _run() -> None:
        for _ in range(5):
            await limiter.run_with_retry(op)

    asyncio.run(_run())

    assert admitted[-1] >= 120.0
    _assert_window_bound(admitted, 2)


def test_concurrent_acquirers_respect_bound() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 3)
    admitted: list[float] = []

    async def worker() -> None:
        await limiter.acquire()
        admitted.append(clock())

    async def _run() -> None:
        await asyncio.gather(*(worker() for _ in range(10)))

    asyncio.run(_run())

    assert len(admitted) == 10
    _assert_window_bound(admitted, 3)


def test_retries_rate_limit_errors_with_backoff() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 200, backoff_base_s=1.0, backoff_cap_s=30.0)
    calls = {"n": 0}

    async def op() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TooManyRequests("slow down")
        return "ok"

    assert asyncio.run(limiter.run_with_retry(op, 3)) == "ok"
    assert calls["n"] == 3
    assert clock.sleeps == [1.0, 2.0]


def test_gives_up_after_max_attempts() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 200)

    async def op() -> None:
        raise RateLimitError("quota")

    with pytest.raises(RateLimitError, match="Failed after 3 retries"):
        asyncio.run(limiter.run_with_retry(op, 3))


def test_other_errors_propagate_immediately() -> None:
    clock = SimClock()
    limiter = _limiter(clock, 200)
    calls = {"n": 0}

    async def op() -> None:
        calls["n"] += 1
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        asyncio.run(limiter.run_with_retry(op, 3))
    assert calls["n"] == 1
    assert clock.sleeps == []


def test_backoff_is_capped() -> None:
    limiter = RateLimiter(10, backoff_base_s=1.0, backoff_cap_s=5.0)
    assert [limiter.backoff_s(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_rate_limit_detection() -> None:
    class ResourceExhausted(Exception):
        pass

    class HttpError(Exception):
        status_code = 429

    assert is_rate_limit_error(TooManyRequests())
    assert is_rate_limit_error(ResourceExhausted())
    assert is_rate_limit_error(HttpError())
    assert is_rate_limit_error(RateLimitError("x"))
    assert not is_rate_limit_error(RuntimeError("boom"))


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0)
