from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Callable

from longform_tts.config import get_settings
from longform_tts.errors import JobNotFoundError, ValidationError
from longform_tts.jobs.models import (
    IN_FLIGHT_STATES,
    REMOTE_EXPECTED_STATES,
    JobRecord,
    JobState,
    RecoverableItem,
    new_id,
    now_utc,
)
from longform_tts.jobs.orchestrator import (
    ProgressCallback,
    SynthesisOrchestrator,
    normalize_prefix,
)
from longform_tts.jobs.store import JobStore
from longform_tts.providers.factory import ClientProvider
from longform_tts.utils.log import logger

AUDIO_EXTENSIONS = (".wav", ".mp3")
RECOVERED_HANDLE_PREFIX = "recovered:"

_TIMESTAMP_SUFFIX_RE = re.compile(r"_\d+$")
_UUID_TS_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}(?:_\d+)?", re.IGNORECASE
)
_LONG_DIGITS_RE = re.compile(r"_\d{13,}")


def derive_job_id(object_name: str) -> str | None:
    """
    `output/<job_id>_<epoch_ms>.wav` -> `<job_id>`.

    Only a trailing all-digit `_` part is treated as a timestamp.
    """
    stem = Path(str(object_name or "")).stem
    if not stem:
        return None
    return _TIMESTAMP_SUFFIX_RE.sub("", stem) or stem


def title_from_object_name(object_name: str) -> str:
    stem = Path(str(object_name or "")).stem
    cleaned = _LONG_DIGITS_RE.sub("", _UUID_TS_RE.sub("", stem)).strip(" _-")
    return f"Recovered audiobook ({cleaned or stem})"


class RecoveryScanner:
    """
    Reconciles the job store against the remote bucket listing.

    `scan` is read-only. `recover` downloads one artifact through the same
    orchestrator path a live job uses, so a recovered job looks exactly like
    one that completed normally.
    """

    def __init__(
        self,
        store: JobStore,
        clients: ClientProvider,
        orchestrator: SynthesisOrchestrator,
        *,
        settings=None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        s = settings or get_settings()
        self.store = store
        self.clients = clients
        self.orchestrator = orchestrator
        self.bucket = str(s.gcs_bucket_name)
        self.prefix = normalize_prefix(s.gcs_output_prefix)
        self.output_dir = Path(s.output_dir)
        self.transcode_format = str(s.transcode_format or "").strip().lower().lstrip(".")
        self._wall_clock = wall_clock

    def _local_candidates(self, local_dir: Path, object_name: str) -> list[Path]:
        stem = Path(object_name).stem
        exts = list(AUDIO_EXTENSIONS)
        if self.transcode_format and f".{self.transcode_format}" not in exts:
            exts.append(f".{self.transcode_format}")
        return [local_dir / f"{stem}{ext}" for ext in exts]

    def has_local_copy(self, local_dir: Path, object_name: str) -> bool:
        return any(p.is_file() for p in self._local_candidates(local_dir, object_name))

    async def list_remote_artifacts(self, bucket: str | None = None) -> list[dict[str, Any]]:
        bucket = bucket or self.bucket
        storage = self.clients.storage()
        out: list[dict[str, Any]] = []
        for obj in await storage.list(bucket, self.prefix):
            if not obj.name.lower().endswith(AUDIO_EXTENSIONS):
                continue
            out.append(
                {
                    "name": obj.name,
                    "uri": storage.uri_for(bucket, obj.name),
                    "size": int(obj.size),
                    "created_at": obj.created_at,
                    "job_id": derive_job_id(obj.name),
                }
            )
        return out

    def tracked_jobs(self, bucket: str | None = None) -> list[JobRecord]:
        """
        Records whose remote artifact should (still) exist.
        """
        bucket = bucket or self.bucket
        return self.store.list(
            lambda r: r.state in REMOTE_EXPECTED_STATES
            and bool(r.remote_object_name)
            and (r.remote_bucket or self.bucket) == bucket
            and not r.remote_cleaned_up
            and not r.superseded_by
        )

    async def _finished_remotely(self, rec: JobRecord) -> bool:
        handle = rec.operation_handle or ""
        if not handle or handle.startswith(RECOVERED_HANDLE_PREFIX):
            return False
        try:
            result = await self.orchestrator.poll_operation(handle)
        except Exception as ex:
            logger.warning("scan_poll_failed", job_id=rec.id, handle=handle, error=str(ex))
            return False
        return bool(result.done and not result.error)

    async def scan(
        self,
        bucket: str | None = None,
        local_output_dir: Path | str | None = None,
    ) -> list[RecoverableItem]:
        bucket = bucket or self.bucket
        local_dir = Path(local_output_dir or self.output_dir)
        storage = self.clients.storage()
        running = set(self.orchestrator.active_jobs())

        listing = {o.name: o for o in await storage.list(bucket, self.prefix)}
        items: dict[str, RecoverableItem] = {}
        seen: set[str] = set()

        for rec in self.tracked_jobs(bucket):
            name = str(rec.remote_object_name)
            seen.add(name)
            if rec.id in running or self.has_local_copy(local_dir, name):
                continue
            obj = listing.get(name)
            in_flight = rec.state in IN_FLIGHT_STATES
            if in_flight:
                # the record is stale: confirm the operation really finished
                # and the artifact is really there before offering it
                if obj is None and not await self._finished_remotely(rec):
                    continue
                if not await storage.exists(bucket, name):
                    continue
            elif obj is None:
                continue
            items[name] = RecoverableItem(
                job_id=rec.id,
                book_title=rec.title,
                remote_object_name=name,
                size_bytes=int(obj.size) if obj is not None else 0,
                created_at=(obj.created_at if obj is not None else "") or rec.started_at,
                already_tracked_locally=True,
                source="tracked",
                just_completed=in_flight,
            )

        for name, obj in listing.items():
            if name in seen or not name.lower().endswith(AUDIO_EXTENSIONS):
                continue
            if self.has_local_copy(local_dir, name):
                continue
            jid = derive_job_id(name)
            rec = self.store.get(jid) if jid else None
            if rec is not None and rec.superseded_by:
                rec = None
            items[name] = RecoverableItem(
                job_id=jid,
                book_title=rec.title if rec is not None else title_from_object_name(name),
                remote_object_name=name,
                size_bytes=int(obj.size),
                created_at=obj.created_at,
                already_tracked_locally=rec is not None,
                source="listing",
            )

        out = sorted(items.values(), key=lambda i: (i.created_at, i.remote_object_name))
        logger.info("recovery_scan", bucket=bucket, tracked=len(seen), recoverable=len(out))
        return out

    async def recover(
        self,
        bucket: str | None,
        remote_object_name: str,
        local_output_dir: Path | str | None = None,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """
        Download one remote artifact into the output dir and finalize it.

        An in-flight record for the artifact is continued; otherwise a fresh
        record takes the artifact over (terminal records never transition).
        """
        bucket = bucket or self.bucket
        name = str(remote_object_name or "").strip()
        if not name:
            raise ValidationError("remote_object_name required")
        storage = self.clients.storage()
        if not await storage.exists(bucket, name):
            raise ValidationError(f"Remote artifact not found: {storage.uri_for(bucket, name)}")

        rec = self.store.get(job_id) if job_id else None
        if rec is None or rec.remote_object_name != name:
            rec = self.store.find_by_remote_object(name)
        if rec is not None and rec.superseded_by:
            rec = None
        if rec is not None and rec.id in self.orchestrator.active_jobs():
            raise ValidationError(f"Job {rec.id} is still running")

        out_dir = Path(local_output_dir or self.output_dir)
        if rec is not None and rec.state in IN_FLIGHT_STATES:
            target = rec
            if target.state == JobState.SUBMITTED:
                self.store.update(
                    target.id,
                    state=JobState.SYNTHESIZING,
                    progress=max(target.progress, self.orchestrator.progress_high),
                    step="synthesizing",
                )
        else:
            target = self._takeover_record(bucket, name, rec)

        logger.info("recovery_started", job_id=target.id, object=name, previous=rec.id if rec else None)
        try:
            final = await self.orchestrator.download_and_finalize(
                target.id, on_progress=on_progress, output_dir=out_dir
            )
        except Exception as ex:
            self.orchestrator.fail_job(target.id, ex)
            raise

        if rec is not None and rec.id != final.id:
            self.store.update(
                rec.id, superseded_by=final.id, remote_cleaned_up=bool(final.remote_cleaned_up)
            )
        logger.info("recovery_done", job_id=final.id, path=final.local_path, state=final.state.value)
        return {
            "job_id": final.id,
            "local_path": final.local_path,
            "filename": final.local_filename,
            "state": final.state.value,
            "record": final.view(),
        }

    def _takeover_record(self, bucket: str, name: str, previous: JobRecord | None) -> JobRecord:
        jid = derive_job_id(name) or new_id()
        if self.store.get(jid) is not None:
            jid = f"{jid}-recovered-{int(self._wall_clock() * 1000)}"
        ts = now_utc()
        handle = (previous.operation_handle if previous is not None else None) or (
            f"{RECOVERED_HANDLE_PREFIX}{name}"
        )
        rec = JobRecord(
            id=jid,
            title=previous.title if previous is not None else title_from_object_name(name),
            character_count=previous.character_count if previous is not None else 0,
            uploaded_filename=previous.uploaded_filename if previous is not None else "",
            state=JobState.SYNTHESIZING,
            started_at=ts,
            updated_at=ts,
            progress=self.orchestrator.progress_high,
            step="synthesizing",
            provider_progress=100.0,
            operation_handle=handle,
            remote_artifact_uri=self.clients.storage().uri_for(bucket, name),
            remote_bucket=bucket,
            remote_object_name=name,
            voice=dict(previous.voice) if previous is not None else {},
            input_mode=previous.input_mode if previous is not None else "",
        )
        return self.store.create(rec)

    async def check_operation(self, job_id: str) -> dict[str, Any]:
        rec = self.store.get(job_id)
        if rec is None:
            raise JobNotFoundError(job_id)
        handle = rec.operation_handle or ""
        out: dict[str, Any] = {
            "job_id": rec.id,
            "state": rec.state.value,
            "operation_handle": handle or None,
            "remote_object_name": rec.remote_object_name,
        }
        if not handle or handle.startswith(RECOVERED_HANDLE_PREFIX):
            out.update(done=None, progress=None, error=None, checked=False)
            return out
        result = await self.orchestrator.poll_operation(handle)
        out.update(
            done=result.done,
            progress=result.progress,
            error=result.error,
            strategy=result.strategy,
            checked=True,
        )
        return out

