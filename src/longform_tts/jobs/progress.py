"""
Progress decoding and tiered polling.

Long-running provider operations report progress through a metadata blob with
no stable schema. `extract_progress` tries, in order:

  1. a structured attribute on the metadata object,
  2. a generic mapping key,
  3. a raw scan of the encoded bytes (provider-specific adapter below).

Polling itself is a list of strategies evaluated in priority order; the first
one that answers wins.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Awaitable, Callable, Sequence

from longform_tts.providers.interfaces import PollResult, SpeechProvider
from longform_tts.utils.log import logger

_PROGRESS_ATTRS = ("progress_percentage", "progress_percent")
_PROGRESS_KEYS = ("progressPercentage", "progressPercent", "progress_percentage", "progress_percent")

# Long-audio metadata: field 3 (progress_percentage), wire type 1 (64-bit).
RAW_PROGRESS_TAG = 0x19


def _valid(v: Any) -> float | None:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or f < 0.0 or f > 100.0:
        return None
    return f


def _raw_bytes(metadata: Any) -> bytes | None:
    if isinstance(metadata, (bytes, bytearray, memoryview)):
        return bytes(metadata)
    value = getattr(metadata, "value", None)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return None


def scan_raw_progress(raw: bytes, tag: int = RAW_PROGRESS_TAG) -> float | None:
    """
    Find `tag` followed by a little-endian double in [0, 100].

    Brittle by nature; only the first plausible hit is trusted.
    """
    start = 0
    while True:
        idx = raw.find(bytes([tag]), start)
        if idx < 0 or idx + 9 > len(raw):
            return None
        (value,) = struct.unpack_from("<d", raw, idx + 1)
        ok = _valid(value)
        if ok is not None:
            return ok
        start = idx + 1


def extract_progress(metadata: Any) -> float | None:
    if metadata is None:
        return None
    for attr in _PROGRESS_ATTRS:
        v = _valid(getattr(metadata, attr, None))
        if v is not None:
            return v
    if isinstance(metadata, Mapping):
        for key in _PROGRESS_KEYS:
            v = _valid(metadata.get(key))
            if v is not None:
                return v
    raw = _raw_bytes(metadata)
    if raw:
        return scan_raw_progress(raw)
    return None


def remap_progress(raw: float, low: float = 20.0, high: float = 90.0) -> float:
    """
    Map provider progress (0-100) onto the caller-visible synthesis band.
    """
    clamped = min(100.0, max(0.0, float(raw)))
    return float(low) + (float(high) - float(low)) * clamped / 100.0


class PollStrategy:
    name = "base"

    def available(self, provider: SpeechProvider) -> bool:
        return True

    async def poll(self, provider: SpeechProvider, handle: str) -> PollResult:
        raise NotImplementedError


class ProgressCheckStrategy(PollStrategy):
    name = "check_progress"

    def available(self, provider: SpeechProvider) -> bool:
        return callable(getattr(provider, "check_progress", None))

    async def poll(self, provider: SpeechProvider, handle: str) -> PollResult:
        return await provider.check_progress(handle)  # type: ignore[attr-defined]


class GetOperationStrategy(PollStrategy):
    name = "get_operation"

    def available(self, provider: SpeechProvider) -> bool:
        return callable(getattr(provider, "get_operation", None))

    async def poll(self, provider: SpeechProvider, handle: str) -> PollResult:
        return await provider.get_operation(handle)  # type: ignore[attr-defined]


class StatusStrategy(PollStrategy):
    name = "poll_status"

    async def poll(self, provider: SpeechProvider, handle: str) -> PollResult:
        return await provider.poll_status(handle)


DEFAULT_STRATEGIES: tuple[PollStrategy, ...] = (
    ProgressCheckStrategy(),
    GetOperationStrategy(),
    StatusStrategy(),
)


class Poller:
    """
    Runs the poll strategies in priority order; the first success wins.

    `call` wraps each outbound attempt (the orchestrator passes the rate
    limiter's retry wrapper). The last decoded progress per handle is retained
    so a result without progress never resets it.
    """

    def __init__(
        self,
        strategies: Sequence[PollStrategy] = DEFAULT_STRATEGIES,
        *,
        call: Callable[[Callable[[], Awaitable[PollResult]]], Awaitable[PollResult]] | None = None,
    ) -> None:
        self.strategies = tuple(strategies)
        self._call = call
        self._last: dict[str, float] = {}

    async def _invoke(self, fn: Callable[[], Awaitable[PollResult]]) -> PollResult:
        if self._call is None:
            return await fn()
        return await self._call(fn)

    async def poll_once(self, provider: SpeechProvider, handle: str) -> PollResult:
        last_ex: Exception | None = None
        for strategy in self.strategies:
            if not strategy.available(provider):
                continue
            try:
                result = await self._invoke(lambda s=strategy: s.poll(provider, handle))
            except Exception as ex:
                last_ex = ex
                logger.warning(
                    "poll_strategy_failed", strategy=strategy.name, handle=handle, error=str(ex)
                )
                continue
            progress = _valid(result.progress) if result.progress is not None else None
            if progress is None:
                progress = extract_progress(result.metadata)
            if progress is None:
                progress = self._last.get(handle)
            else:
                self._last[handle] = progress
            return replace(result, progress=progress, strategy=strategy.name)
        if last_ex is not None:
            raise last_ex
        raise RuntimeError("no poll strategy available for provider")

    def forget(self, handle: str) -> None:
        self._last.pop(handle, None)
