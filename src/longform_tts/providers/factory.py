from __future__ import annotations

import threading
from typing import Callable

from longform_tts.errors import ValidationError
from longform_tts.providers.interfaces import ObjectStorage, SpeechProvider, Transcoder
from longform_tts.utils.ffmpeg import FfmpegTranscoder
from longform_tts.utils.log import logger


class ClientProvider:
    """
    Builds the speech / storage / transcode clients once, on first use, and
    hands the same instances to every job and to the recovery scanner.

    `configure()` swaps factories at runtime; the next access rebuilds.
    """

    def __init__(
        self,
        *,
        speech_factory: Callable[[], SpeechProvider],
        storage_factory: Callable[[], ObjectStorage],
        transcoder_factory: Callable[[], Transcoder],
    ) -> None:
        self._lock = threading.Lock()
        self._speech_factory = speech_factory
        self._storage_factory = storage_factory
        self._transcoder_factory = transcoder_factory
        self._speech: SpeechProvider | None = None
        self._storage: ObjectStorage | None = None
        self._transcoder: Transcoder | None = None

    @classmethod
    def from_instances(
        cls,
        speech: SpeechProvider,
        storage: ObjectStorage,
        transcoder: Transcoder,
    ) -> ClientProvider:
        return cls(
            speech_factory=lambda: speech,
            storage_factory=lambda: storage,
            transcoder_factory=lambda: transcoder,
        )

    def speech(self) -> SpeechProvider:
        with self._lock:
            if self._speech is None:
                self._speech = self._speech_factory()
                logger.info("speech_client_ready", client=type(self._speech).__name__)
            return self._speech

    def storage(self) -> ObjectStorage:
        with self._lock:
            if self._storage is None:
                self._storage = self._storage_factory()
                logger.info("storage_client_ready", client=type(self._storage).__name__)
            return self._storage

    def transcoder(self) -> Transcoder:
        with self._lock:
            if self._transcoder is None:
                self._transcoder = self._transcoder_factory()
            return self._transcoder

    def configure(
        self,
        *,
        speech_factory: Callable[[], SpeechProvider] | None = None,
        storage_factory: Callable[[], ObjectStorage] | None = None,
        transcoder_factory: Callable[[], Transcoder] | None = None,
    ) -> None:
        with self._lock:
            if speech_factory is not None:
                self._speech_factory = speech_factory
                self._speech = None
            if storage_factory is not None:
                self._storage_factory = storage_factory
                self._storage = None
            if transcoder_factory is not None:
                self._transcoder_factory = transcoder_factory
                self._transcoder = None

    def reset(self) -> None:
        with self._lock:
            self._speech = None
            self._storage = None
            self._transcoder = None


def build_client_provider(s) -> ClientProvider:
    """
    Bind the configured backends (SPEECH_BACKEND / STORAGE_BACKEND).
    """
    speech_backend = str(s.speech_backend or "").strip().lower()
    storage_backend = str(s.storage_backend or "").strip().lower()
    if speech_backend != "google":
        raise ValidationError(f"Unsupported SPEECH_BACKEND: {s.speech_backend}")
    if storage_backend != "gcs":
        raise ValidationError(f"Unsupported STORAGE_BACKEND: {s.storage_backend}")

    creds = s.google_credentials_path

    def _speech() -> SpeechProvider:
        from longform_tts.providers.google_tts import GoogleLongAudioProvider

        return GoogleLongAudioProvider(
            project_id=s.gcp_project_id, location=s.gcs_location, credentials_path=creds
        )

    def _storage() -> ObjectStorage:
        from longform_tts.providers.gcs import GcsStorage

        return GcsStorage(
            project_id=s.gcp_project_id,
            credentials_path=creds,
            emulator_host=s.gcs_emulator_host,
            bucket_location=s.gcs_bucket_location,
        )

    def _transcoder() -> Transcoder:
        return FfmpegTranscoder(str(s.ffmpeg_bin), timeout_s=int(s.transcode_timeout_s))

    return ClientProvider(
        speech_factory=_speech, storage_factory=_storage, transcoder_factory=_transcoder
    )
