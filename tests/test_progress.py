from __future__ import annotations

import asyncio
import struct
from types import SimpleNamespace

import pytest

from longform_tts.jobs.progress import Poller, extract_progress, remap_progress, scan_raw_progress
from longform_tts.providers.interfaces import PollResult


def _raw(value: float) -> bytes:
    return b"\x0a\x05hello" + b"\x19" + struct.pack("<d", value) + b"\x20\x01"


def test_structured_attribute_wins() -> None:
    meta = SimpleNamespace(progress_percentage=42.5)
    assert extract_progress(meta) == 42.5


def test_mapping_key() -> None:
    assert extract_progress({"progressPercentage": 17}) == 17.0
    assert extract_progress({"unrelated": 17}) is None


def test_raw_bytes_scan() -> None:
    assert extract_progress(_raw(37.5)) == 37.5
    assert extract_progress(SimpleNamespace(value=_raw(64.0))) == 64.0


def test_raw_scan_skips_implausible_values() -> None:
    raw = b"\x19" + struct.pack("<d", float("nan")) + b"\x19" + struct.pack("<d", 12.0)
    assert scan_raw_progress(raw) == 12.0
    assert scan_raw_progress(b"\x19" + struct.pack("<d", 250.0)) is None
    assert scan_raw_progress(b"\x19\x00") is None


def test_invalid_values_are_ignored() -> None:
    assert extract_progress(SimpleNamespace(progress_percentage=float("inf"))) is None
    assert extract_progress({"progressPercentage": -1}) is None
    assert extract_progress(None) is None


def test_remap_into_band() -> None:
    assert remap_progress(0, 20, 90) == 20.0
    assert remap_progress(50, 20, 90) == 55.0
    assert remap_progress(100, 20, 90) == 90.0
    assert remap_progress(400, 20, 90) == 90.0


class _TieredProvider:
    input_mode = "sentences"

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def check_progress(self, handle: str) -> PollResult:
        self.calls.append("check_progress")
        raise RuntimeError("deserialization failed")

    async def get_operation(self, handle: str) -> PollResult:
        self.calls.append("get_operation")
        return PollResult(done=False, metadata=SimpleNamespace(value=_raw(33.0)))

    async def poll_status(self, handle: str) -> PollResult:
        self.calls.append("poll_status")
        return PollResult(done=False)


def test_poller_falls_through_strategies() -> None:
    provider = _TieredProvider()
    result = asyncio.run(Poller().poll_once(provider, "ops/1"))

    assert provider.calls == ["check_progress", "get_operation"]
    assert result.strategy == "get_operation"
    assert result.progress == 33.0
    assert result.done is False


class _StatusOnlyProvider:
    input_mode = "sentences"

    def __init__(self, results: list[PollResult]) -> None:
        self.results = results

    async def poll_status(self, handle: str) -> PollResult:
        return self.results.pop(0)


def test_poller_keeps_last_known_progress() -> None:
    provider = _StatusOnlyProvider(
        [
            PollResult(done=False, metadata={"progressPercentage": 40.0}),
            PollResult(done=False, metadata=None),
        ]
    )
    poller = Poller()

    async def _run() -> tuple[PollResult, PollResult]:
        return await poller.poll_once(provider, "ops/1"), await poller.poll_once(provider, "ops/1")

    first, second = asyncio.run(_run())
    assert first.progress == 40.0
    assert second.progress == 40.0
    assert second.strategy == "poll_status"


def test_poller_raises_last_error_when_all_fail() -> None:
    class _Broken:
        input_mode = "sentences"

        async def poll_status(self, handle: str) -> PollResult:
            raise ConnectionError("unreachable")

    with pytest.raises(ConnectionError):
        asyncio.run(Poller().poll_once(_Broken(), "ops/1"))


def test_poller_routes_calls_through_wrapper() -> None:
    seen: list[str] = []

    async def call(fn):
        seen.append("call")
        return await fn()

    provider = _StatusOnlyProvider([PollResult(done=True, metadata={"progressPercentage": 100})])
    result = asyncio.run(Poller(call=call).poll_once(provider, "ops/1"))
    assert seen == ["call"]
    assert result.done is True and result.progress == 100.0
