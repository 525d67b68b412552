from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def jobs_db_path(self):
        return self.public.jobs_db_path()

    def resolved_state_dir(self):
        return self.public.resolved_state_dir()


def _validate(s: Settings) -> None:
    """
    Hard-fail on values that would make the orchestrator misbehave silently.
    """
    p = s.public
    bad: list[str] = []
    if int(p.requests_per_minute) <= 0:
        bad.append("TTS_REQUESTS_PER_MINUTE must be > 0")
    if int(p.max_attempts) <= 0:
        bad.append("TTS_MAX_ATTEMPTS must be > 0")
    if not (0.0 <= float(p.chunk_safety_ratio) < 0.5):
        bad.append("TTS_CHUNK_SAFETY_RATIO must be in [0, 0.5)")
    if int(p.max_request_bytes) <= 0:
        bad.append("TTS_MAX_REQUEST_BYTES must be > 0")
    if int(p.max_sentence_length) < 2:
        bad.append("TTS_MAX_SENTENCE_LENGTH must be >= 2")
    if not (0.0 <= float(p.progress_low) < float(p.progress_high) <= 100.0):
        bad.append("TTS_PROGRESS_LOW/TTS_PROGRESS_HIGH must satisfy 0 <= low < high <= 100")
    if float(p.poll_interval_s) < 0 or float(p.synthesis_timeout_s) <= 0:
        bad.append("TTS_POLL_INTERVAL_S must be >= 0 and TTS_SYNTHESIS_TIMEOUT_S > 0")
    mode = str(p.input_mode or "").strip().lower()
    if mode not in {"", "sentences", "bytes"}:
        bad.append("TTS_INPUT_MODE must be one of: sentences, bytes")
    if bad:
        raise ConfigError("Invalid configuration: " + "; ".join(bad))


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub: dict[str, Any] = {}
    for k, v in s.public.model_dump().items():
        pub[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(SecretConfig.model_fields.keys()):
        v = getattr(s.secret, k, None)
        sec[k] = "SET" if v is not None and str(v).strip() else "UNSET"
    return {"public": pub, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s


class _SettingsProxy:
    """
    Lazy proxy so tests can set env vars before first access.
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)

    def reload(self) -> None:
        get_settings.cache_clear()

    def snapshot(self) -> Settings:
        return get_settings()


# Single access point
SETTINGS = _SettingsProxy()
