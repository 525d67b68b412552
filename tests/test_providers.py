from __future__ import annotations

import asyncio
import io
import json
import struct
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from longform_tts.errors import DownloadError, RateLimitError, ValidationError
from longform_tts.jobs.progress import Poller
from longform_tts.providers.factory import ClientProvider, build_client_provider
from longform_tts.providers.gcs import GcsStorage, _normalize_emulator_endpoint
from longform_tts.providers.google_tts import GoogleLongAudioProvider, resolve_project_id
from tests._helpers.fakes import FakeStorage, FakeTranscoder, TooManyRequests


# --- storage SDK double ---
class _Blob:
    def __init__(self, bucket: "_Bucket", name: str) -> None:
        self._bucket = bucket
        self.name = name
        self.content_type = "audio/wav"
        self.time_created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.updated = self.time_created

    @property
    def size(self) -> int:
        return len(self._bucket.data[self.name])

    def exists(self) -> bool:
        return self.name in self._bucket.data

    def delete(self) -> None:
        del self._bucket.data[self.name]

    def open(self, mode: str, chunk_size: int | None = None) -> io.BytesIO:
        return io.BytesIO(self._bucket.data[self.name])


class _Bucket:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    def blob(self, name: str) -> _Blob:
        return _Blob(self, name)

    def get_blob(self, name: str) -> _Blob | None:
        return _Blob(self, name) if name in self.data else None


class _StorageClient:
    def __init__(self) -> None:
        self.buckets: dict[str, _Bucket] = {"b": _Bucket()}

    def bucket(self, name: str) -> _Bucket:
        return self.buckets[name]

    def list_blobs(self, bucket: str, prefix: str | None = None) -> list[_Blob]:
        b = self.buckets[bucket]
        return [b.blob(n) for n in sorted(b.data) if n.startswith(prefix or "")]


def test_gcs_list_exists_delete() -> None:
    client = _StorageClient()
    client.buckets["b"].data.update({"output/a_1.wav": b"x" * 10, "other/z.wav": b"y"})
    gcs = GcsStorage(client=client)

    async def _go():
        listed = await gcs.list("b", "output/")
        present = await gcs.exists("b", "output/a_1.wav")
        await gcs.delete("b", "output/a_1.wav")
        gone = await gcs.exists("b", "output/a_1.wav")
        return listed, present, gone

    listed, present, gone = asyncio.run(_go())
    assert [(o.name, o.size, o.bucket) for o in listed] == [("output/a_1.wav", 10, "b")]
    assert listed[0].created_at.startswith("2024-05-01")
    assert present is True and gone is False
    assert gcs.uri_for("b", "output/a_1.wav") == "gs://b/output/a_1.wav"


def test_gcs_streaming_download_reports_progress(tmp_path: Path) -> None:
    client = _StorageClient()
    client.buckets["b"].data["output/a_1.wav"] = b"RIFF" * 100
    gcs = GcsStorage(client=client)
    seen: list[tuple[int, int]] = []
    dest = tmp_path / "out" / "a_1.wav"

    size = asyncio.run(
        gcs.download_streaming("b", "output/a_1.wav", dest, lambda r, t: seen.append((r, t)))
    )

    assert size == 400
    assert dest.read_bytes() == b"RIFF" * 100
    assert seen[-1] == (400, 400)


def test_gcs_download_missing_object(tmp_path: Path) -> None:
    gcs = GcsStorage(client=_StorageClient())
    dest = tmp_path / "missing.wav"
    with pytest.raises(DownloadError):
        asyncio.run(gcs.download_streaming("b", "output/missing.wav", dest))
    assert not dest.exists()


def test_emulator_endpoint_normalization() -> None:
    assert _normalize_emulator_endpoint("http://localhost:4443/storage/v1/") == "http://localhost:4443"
    assert _normalize_emulator_endpoint("localhost:4443/") == "localhost:4443"


# --- speech SDK double ---
def _operation(done: bool, progress: float, code: int = 0, message: str = "") -> SimpleNamespace:
    raw = b"\x19" + struct.pack("<d", progress)
    return SimpleNamespace(
        done=done,
        metadata=SimpleNamespace(value=raw),
        error=SimpleNamespace(code=code, message=message),
    )


class _OperationsClient:
    def __init__(self, ops: list) -> None:
        self.ops = ops

    def get_operation(self, name: str):
        op = self.ops.pop(0)
        if isinstance(op, Exception):
            raise op
        return op


def _speech_client(ops: list) -> SimpleNamespace:
    return SimpleNamespace(transport=SimpleNamespace(operations_client=_OperationsClient(ops)))


def test_resolve_project_id(tmp_path: Path) -> None:
    assert resolve_project_id("explicit", None) == "explicit"
    creds = tmp_path / "sa.json"
    creds.write_text(json.dumps({"project_id": "from-file"}), encoding="utf-8")
    assert resolve_project_id(None, str(creds)) == "from-file"
    with pytest.raises(ValidationError):
        resolve_project_id(None, None)


def test_google_poll_status_decodes_raw_progress() -> None:
    provider = GoogleLongAudioProvider(
        project_id="p", client=_speech_client([_operation(False, 42.0), _operation(True, 100.0)])
    )
    assert provider.parent == "projects/p/locations/global"

    poller = Poller(strategies=[s for s in Poller().strategies if s.name == "poll_status"])

    async def _go():
        return await poller.poll_once(provider, "ops/1"), await poller.poll_once(provider, "ops/1")

    first, second = asyncio.run(_go())
    assert first.done is False and first.progress == 42.0
    assert second.done is True and second.error is None


def test_google_operation_error_message() -> None:
    provider = GoogleLongAudioProvider(
        project_id="p", client=_speech_client([_operation(True, 0.0, code=3, message="bad voice")])
    )
    result = asyncio.run(provider.poll_status("ops/1"))
    assert result.error == "provider error 3: bad voice"


def test_google_rate_limit_is_mapped() -> None:
    provider = GoogleLongAudioProvider(project_id="p", client=_speech_client([TooManyRequests("quota")]))
    with pytest.raises(RateLimitError):
        asyncio.run(provider.poll_status("ops/1"))


# --- client wiring ---
def test_client_provider_builds_once_and_reconfigures() -> None:
    built = {"n": 0}
    storage = FakeStorage()

    def _storage_factory():
        built["n"] += 1
        return storage

    clients = ClientProvider(
        speech_factory=lambda: SimpleNamespace(input_mode="sentences"),
        storage_factory=_storage_factory,
        transcoder_factory=FakeTranscoder,
    )
    assert clients.storage() is clients.storage()
    assert built["n"] == 1

    other = FakeStorage()
    clients.configure(storage_factory=lambda: other)
    assert clients.storage() is other

    clients.reset()
    assert clients.storage() is other
    assert isinstance(clients.transcoder(), FakeTranscoder)


def test_unsupported_backends_are_rejected() -> None:
    with pytest.raises(ValidationError):
        build_client_provider(SimpleNamespace(speech_backend="polly", storage_backend="gcs"))
    with pytest.raises(ValidationError):
        build_client_provider(SimpleNamespace(speech_backend="google", storage_backend="s3"))


# --- bytes mode against the long-audio backend ---
class _RecordingSpeechClient:
    def __init__(self) -> None:
        self.requests: list = []

    def synthesize_long_audio(self, request):
        self.requests.append(request)
        raise AssertionError("long-audio backend must not be called for byte segments")


def test_google_submit_rejects_byte_segments() -> None:
    from longform_tts.providers.interfaces import SynthesisRequest, VoiceParams

    client = _RecordingSpeechClient()
    provider = GoogleLongAudioProvider(project_id="p", client=client)
    request = SynthesisRequest(
        text="abcd " * 2400,
        voice=VoiceParams(),
        output_uri="gs://b/output/x_1.wav",
        input_mode="bytes",
        segments=("abcd " * 800,) * 3,
    )

    with pytest.raises(ValidationError):
        asyncio.run(provider.submit(request))
    assert client.requests == []


def test_bytes_mode_job_on_long_audio_backend_fails_validation() -> None:
    from tests._helpers.fakes import build_service

    client = _RecordingSpeechClient()
    h = build_service(provider=GoogleLongAudioProvider(project_id="p", client=client))

    async def _go() -> dict:
        job_id = await h.service.start_job("abcd " * 2400, {"title": "big", "input_mode": "bytes"})
        return await h.orchestrator.wait(job_id)

    status = asyncio.run(_go())
    assert status["state"] == "ERROR"
    assert status["error_kind"] == "validation"
    assert status["operation_handle"] is None
    assert client.requests == []


# --- bucket bootstrap ---
class Forbidden(Exception):
    code = 403


class _BucketAdminClient:
    def __init__(self, existing=(), exists_error=None, create_error=None) -> None:
        self.existing = set(existing)
        self.exists_error = exists_error
        self.create_error = create_error
        self.checks: list[str] = []
        self.created: list[tuple[str, str]] = []

    def bucket(self, name: str) -> SimpleNamespace:
        def _exists() -> bool:
            self.checks.append(name)
            if self.exists_error is not None:
                raise self.exists_error
            return name in self.existing

        return SimpleNamespace(name=name, exists=_exists)

    def create_bucket(self, handle, location: str | None = None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((handle.name, location))
        self.existing.add(handle.name)
        return handle


def test_ensure_bucket_creates_missing_bucket_once() -> None:
    client = _BucketAdminClient()
    gcs = GcsStorage(client=client, bucket_location="EU")

    async def _go() -> None:
        await gcs.ensure_bucket("fresh")
        await gcs.ensure_bucket("fresh")

    asyncio.run(_go())
    assert client.created == [("fresh", "EU")]
    assert client.checks == ["fresh"]


def test_ensure_bucket_leaves_existing_bucket() -> None:
    client = _BucketAdminClient(existing=["b"])
    asyncio.run(GcsStorage(client=client).ensure_bucket("b"))
    assert client.created == []


def test_ensure_bucket_tolerates_permission_errors() -> None:
    check_denied = _BucketAdminClient(exists_error=Forbidden("no storage.buckets.get"))
    asyncio.run(GcsStorage(client=check_denied).ensure_bucket("b"))
    assert check_denied.created == []

    create_denied = _BucketAdminClient(create_error=Forbidden("no storage.buckets.create"))
    asyncio.run(GcsStorage(client=create_denied).ensure_bucket("b"))


def test_ensure_bucket_reports_other_failures_clearly() -> None:
    client = _BucketAdminClient(create_error=RuntimeError("name already taken"))
    with pytest.raises(ValidationError, match="Output bucket 'b' is unavailable"):
        asyncio.run(GcsStorage(client=client).ensure_bucket("b"))
