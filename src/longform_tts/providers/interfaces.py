from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

INPUT_MODE_SENTENCES = "sentences"
INPUT_MODE_BYTES = "bytes"


@dataclass(frozen=True, slots=True)
class VoiceParams:
    name: str = "en-US-Chirp3-HD-Iapetus"
    language_code: str = "en-US"
    speaking_rate: float = 1.0
    pitch: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_settings(cls, s) -> VoiceParams:
        return cls(
            name=str(s.voice_name),
            language_code=str(s.language_code),
            speaking_rate=float(s.speaking_rate),
            pitch=float(s.pitch),
        )

    def merged(self, overrides: dict[str, Any] | None) -> VoiceParams:
        if not overrides:
            return self
        d = self.to_dict()
        d.update({k: v for k, v in overrides.items() if k in d and v is not None})
        return VoiceParams(**d)


@dataclass(frozen=True, slots=True)
class SynthesisRequest:
    text: str
    voice: VoiceParams
    output_uri: str
    input_mode: str = INPUT_MODE_SENTENCES
    # Byte-mode requests carry the verified chunk texts; `text` stays the full input.
    segments: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PollResult:
    done: bool
    progress: float | None = None
    metadata: Any = None
    error: str | None = None
    strategy: str = ""


@dataclass(frozen=True, slots=True)
class StoredObject:
    name: str
    size: int
    created_at: str
    bucket: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SpeechProvider(Protocol):
    """
    Remote long-running synthesis.

    Optional extras picked up by the poller when present:
      - `check_progress(handle) -> PollResult`
      - `get_operation(handle) -> PollResult`
    """

    input_mode: str

    async def submit(self, request: SynthesisRequest) -> str: ...

    async def poll_status(self, handle: str) -> PollResult: ...


@runtime_checkable
class ObjectStorage(Protocol):
    """
    Remote artifact storage. An optional `ensure_bucket(bucket)` runs before
    each submission when present.
    """

    async def exists(self, bucket: str, name: str) -> bool: ...

    async def list(self, bucket: str, prefix: str) -> list[StoredObject]: ...

    async def delete(self, bucket: str, name: str) -> None: ...

    async def download_streaming(
        self,
        bucket: str,
        name: str,
        local_path: Path,
        on_bytes: Callable[[int, int], None] | None = None,
    ) -> int: ...

    def uri_for(self, bucket: str, name: str) -> str: ...


@runtime_checkable
class Transcoder(Protocol):
    def transcode(self, src: Path, dst: Path, target_format: str) -> bool: ...
