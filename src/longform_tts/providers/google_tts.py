from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from longform_tts.errors import ProviderOperationError, RateLimitError, ValidationError
from longform_tts.providers.interfaces import (
    INPUT_MODE_SENTENCES,
    PollResult,
    SynthesisRequest,
)
from longform_tts.utils.log import logger
from longform_tts.utils.ratelimit import is_rate_limit_error


def resolve_project_id(project_id: str | None, credentials_path: str | None) -> str:
    """
    Explicit project first, then the service-account file's `project_id`.
    """
    if project_id:
        return str(project_id)
    if credentials_path and Path(credentials_path).is_file():
        try:
            data = json.loads(Path(credentials_path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as ex:
            raise ValidationError(f"Unreadable credentials file: {ex}") from ex
        pid = str(data.get("project_id") or "")
        if pid:
            return pid
    raise ValidationError(
        "Google Cloud project id unknown: set GOOGLE_CLOUD_PROJECT or use a service-account file"
    )


def _status_message(status: Any) -> str | None:
    if status is None:
        return None
    code = int(getattr(status, "code", 0) or 0)
    if code == 0:
        return None
    msg = str(getattr(status, "message", "") or "")
    return f"provider error {code}: {msg}" if msg else f"provider error {code}"


class GoogleLongAudioProvider:
    """
    Google Cloud Text-to-Speech long-audio synthesis (v1beta1).

    Output is LINEAR16 written straight to a `gs://` URI; the operation is polled
    through the long-running operations API. SDK calls are blocking and run in a
    worker thread.
    """

    input_mode = INPUT_MODE_SENTENCES

    def __init__(
        self,
        *,
        project_id: str | None = None,
        location: str = "global",
        credentials_path: str | None = None,
        client: Any = None,
    ) -> None:
        self.credentials_path = credentials_path
        self.project_id = resolve_project_id(project_id, credentials_path)
        self.location = str(location or "global")
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from google.cloud import texttospeech_v1beta1 as tts  # type: ignore

            cls = tts.TextToSpeechLongAudioSynthesizeClient
            if self.credentials_path:
                self._client = cls.from_service_account_file(self.credentials_path)
            else:
                self._client = cls()
        return self._client

    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}/locations/{self.location}"

    def _raise_mapped(self, ex: Exception, op: str) -> None:
        if is_rate_limit_error(ex):
            raise RateLimitError(f"{op}: {ex}") from ex
        raise ex

    async def submit(self, request: SynthesisRequest) -> str:
        # long-audio synthesis takes the whole text in one request; it has no per-segment path
        if request.input_mode != INPUT_MODE_SENTENCES or request.segments:
            raise ValidationError(
                f"Long-audio synthesis does not accept {request.input_mode!r} input "
                f"({len(request.segments)} segments)"
            )
        from google.cloud import texttospeech_v1beta1 as tts  # type: ignore

        body = tts.SynthesizeLongAudioRequest(
            parent=self.parent,
            input=tts.SynthesisInput(text=request.text),
            voice=tts.VoiceSelectionParams(
                language_code=request.voice.language_code, name=request.voice.name
            ),
            audio_config=tts.AudioConfig(
                audio_encoding=tts.AudioEncoding.LINEAR16,
                speaking_rate=float(request.voice.speaking_rate),
                pitch=float(request.voice.pitch),
            ),
            output_gcs_uri=request.output_uri,
        )
        try:
            op = await asyncio.to_thread(self.client.synthesize_long_audio, request=body)
        except Exception as ex:
            self._raise_mapped(ex, "synthesize_long_audio")
        name = str(op.operation.name)
        logger.info("provider_operation_started", handle=name, parent=self.parent)
        return name

    def _raw_operation(self, handle: str) -> Any:
        return self.client.transport.operations_client.get_operation(handle)

    async def check_progress(self, handle: str) -> PollResult:
        from google.cloud import texttospeech_v1beta1 as tts  # type: ignore

        try:
            op = await asyncio.to_thread(self._raw_operation, handle)
        except Exception as ex:
            self._raise_mapped(ex, "check_progress")
        meta = tts.SynthesizeLongAudioMetadata.deserialize(op.metadata.value)
        return PollResult(
            done=bool(op.done),
            progress=float(meta.progress_percentage),
            metadata=meta,
            error=_status_message(op.error) if op.done else None,
        )

    async def get_operation(self, handle: str) -> PollResult:
        try:
            op = await asyncio.to_thread(self.client.get_operation, {"name": handle})
        except Exception as ex:
            self._raise_mapped(ex, "get_operation")
        # metadata stays an opaque google.protobuf.Any; progress is decoded by the poller
        return PollResult(
            done=bool(op.done),
            metadata=op.metadata,
            error=_status_message(op.error) if op.done else None,
        )

    async def poll_status(self, handle: str) -> PollResult:
        try:
            op = await asyncio.to_thread(self._raw_operation, handle)
        except Exception as ex:
            self._raise_mapped(ex, "poll_status")
        if op is None:
            raise ProviderOperationError(f"operation not found: {handle}")
        return PollResult(
            done=bool(op.done),
            metadata=op.metadata,
            error=_status_message(op.error) if op.done else None,
        )
