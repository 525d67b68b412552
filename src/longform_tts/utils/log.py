from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from longform_tts.config import get_settings

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)


def set_job_id(job_id: str | None) -> None:
    job_id_var.set(job_id)


def _log_path() -> Path:
    s = get_settings()
    return Path(s.log_dir) / "app.log"


_OAUTH_RE = re.compile(r"\bya29\.[A-Za-z0-9_\-\.]+")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_PEM_RE = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL
)
_URL_CRED_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/\s]+):([^@/\s]+)@")
_KV_RE = re.compile(
    r"(?i)\b(private_key_id|private_key|client_secret|access_token|refresh_token|api_key|token|secret|password)\b\s*[=:]\s*([^\s,;]+)"
)


def _secret_literals() -> list[str]:
    """
    Values from the credentials file that must never appear in logs.
    Best-effort (safe even if settings or the file are unavailable).
    """
    vals: list[str] = []
    with suppress(Exception):
        s = get_settings()
        path = str(getattr(s.secret, "google_credentials_path", "") or "")
        if path and Path(path).is_file():
            import json

            data = json.loads(Path(path).read_text(encoding="utf-8"))
            for name in ("private_key", "private_key_id", "client_secret", "refresh_token"):
                v = str(data.get(name) or "")
                if v:
                    vals.append(v)
    # ignore tiny values to avoid over-redaction
    return [v for v in dict.fromkeys(vals) if len(v) >= 8]


def _redact_str(s: str) -> str:
    with suppress(Exception):
        for lit in _secret_literals():
            if lit in s:
                s = s.replace(lit, "***REDACTED***")
    s = _PEM_RE.sub("***REDACTED***", s)
    s = _URL_CRED_RE.sub(r"\1***REDACTED***@", s)
    s = _OAUTH_RE.sub("***REDACTED***", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    jid = job_id_var.get()
    if jid:
        event_dict.setdefault("job_id", jid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()
    log_path = _log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # If an older plaintext app.log exists, move it aside so the current file is JSON-only.
    try:
        if log_path.exists() and log_path.is_file() and log_path.stat().st_size > 0:
            with log_path.open("rb") as f:
                first = f.read(1)
            if first and first != b"{":
                stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d%H%M%S")
                log_path.replace(log_path.with_name(f"app.log.legacy-{stamp}"))
    except OSError:
        pass

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_longform_tts_structlog_configured", False):
        return structlog.get_logger("longform_tts")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    file_handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=int(s.log_max_bytes),
        backupCount=int(s.log_backup_count),
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(stream_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._longform_tts_structlog_configured = True
    return structlog.get_logger("longform_tts")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Best-effort runtime log level override (CLI convenience).
    Does not change handlers/formatters; only raises/lowers filtering level.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        with suppress(Exception):
            h.setLevel(lvl)
