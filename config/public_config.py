from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Desktop installs run from the current working directory; container images
    set APP_ROOT explicitly.
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    output_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "output").resolve(), alias="LFT_OUTPUT_DIR"
    )
    log_dir: Path = Field(default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="LFT_LOG_DIR")
    # Runtime-only state directory (job DB + lock file).
    # If unset, defaults to "<LFT_OUTPUT_DIR>/_state".
    state_dir: Path | None = Field(default=None, alias="LFT_STATE_DIR")
    jobs_db_name: str = Field(default="jobs.db", alias="LFT_JOBS_DB_NAME")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- backends ---
    speech_backend: str = Field(default="google", alias="SPEECH_BACKEND")
    storage_backend: str = Field(default="gcs", alias="STORAGE_BACKEND")

    # --- remote layout ---
    gcs_bucket_name: str = Field(default="longform-tts-output", alias="GCS_BUCKET_NAME")
    gcs_location: str = Field(default="global", alias="GCS_LOCATION")
    gcs_output_prefix: str = Field(default="output/", alias="GCS_OUTPUT_PREFIX")
    # used only when the output bucket has to be created
    gcs_bucket_location: str = Field(default="US", alias="GCS_BUCKET_LOCATION")
    gcp_project_id: str | None = Field(default=None, alias="GOOGLE_CLOUD_PROJECT")

    # --- voice defaults ---
    voice_name: str = Field(default="en-US-Chirp3-HD-Iapetus", alias="TTS_VOICE_NAME")
    language_code: str = Field(default="en-US", alias="TTS_LANGUAGE_CODE")
    speaking_rate: float = Field(default=1.0, alias="TTS_SPEAKING_RATE")
    pitch: float = Field(default=0.0, alias="TTS_PITCH")

    # --- input shaping ---
    # sentences|bytes; empty => whatever the provider declares
    input_mode: str = Field(default="", alias="TTS_INPUT_MODE")
    max_request_bytes: int = Field(default=5000, alias="TTS_MAX_REQUEST_BYTES")
    chunk_safety_ratio: float = Field(default=0.04, alias="TTS_CHUNK_SAFETY_RATIO")
    max_sentence_length: int = Field(default=300, alias="TTS_MAX_SENTENCE_LENGTH")
    max_input_chars: int = Field(default=1_000_000, alias="TTS_MAX_INPUT_CHARS")

    # --- throttle / retry ---
    requests_per_minute: int = Field(default=200, alias="TTS_REQUESTS_PER_MINUTE")
    max_attempts: int = Field(default=3, alias="TTS_MAX_ATTEMPTS")
    backoff_base_s: float = Field(default=1.0, alias="TTS_BACKOFF_BASE_S")
    backoff_cap_s: float = Field(default=30.0, alias="TTS_BACKOFF_CAP_S")
    rate_margin_s: float = Field(default=0.1, alias="TTS_RATE_MARGIN_S")

    # --- polling ---
    poll_interval_s: float = Field(default=3.0, alias="TTS_POLL_INTERVAL_S")
    synthesis_timeout_s: float = Field(default=1800.0, alias="TTS_SYNTHESIS_TIMEOUT_S")
    progress_low: float = Field(default=20.0, alias="TTS_PROGRESS_LOW")
    progress_high: float = Field(default=90.0, alias="TTS_PROGRESS_HIGH")

    # --- post-processing ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    transcode_format: str = Field(default="mp3", alias="TRANSCODE_FORMAT")
    transcode_timeout_s: int = Field(default=30 * 60, alias="TRANSCODE_TIMEOUT_S")

    # --- retention ---
    job_retention_days: int = Field(default=7, alias="JOB_RETENTION_DAYS")
    prune_interval_s: int = Field(default=3600, alias="PRUNE_INTERVAL_S")
    prune_on_startup: bool = Field(default=True, alias="PRUNE_ON_STARTUP")

    # --- http server ---
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=3001, alias="PORT")

    def resolved_state_dir(self) -> Path:
        if self.state_dir is not None:
            return Path(self.state_dir).resolve()
        return (Path(self.output_dir).resolve() / "_state").resolve()

    def jobs_db_path(self) -> Path:
        return self.resolved_state_dir() / str(self.jobs_db_name or "jobs.db")
