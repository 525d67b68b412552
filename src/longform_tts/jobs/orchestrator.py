from __future__ import annotations

import asyncio
import re
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable

from longform_tts.config import get_settings
from longform_tts.errors import (
    DownloadError,
    JobNotFoundError,
    PersistenceError,
    ProviderOperationError,
    SynthesisTimeoutError,
    TranscodeError,
    ValidationError,
    error_kind,
    error_message,
)
from longform_tts.jobs.models import JobRecord, JobState, new_id, now_utc
from longform_tts.jobs.progress import Poller, remap_progress
from longform_tts.jobs.store import JobStore
from longform_tts.providers.factory import ClientProvider
from longform_tts.providers.interfaces import (
    INPUT_MODE_BYTES,
    INPUT_MODE_SENTENCES,
    PollResult,
    SynthesisRequest,
    VoiceParams,
)
from longform_tts.text.chunker import chunk_text, verify_chunks
from longform_tts.text.sentences import normalize_sentences
from longform_tts.utils.log import logger, set_job_id
from longform_tts.utils.ratelimit import RateLimiter

ProgressCallback = Callable[[JobRecord], Any]

PROGRESS_PREPARING = 10.0
PROGRESS_DOWNLOAD_END = 98.0
PROGRESS_CONVERTING = 99.0
PROGRESS_DONE = 100.0

# caller ids end up in `<job_id>_<epoch_ms>.wav`; no `_` or `/` so the id can be derived back
_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,127}$")


def validate_job_id(job_id: str) -> str:
    jid = str(job_id or "").strip()
    if not _JOB_ID_RE.match(jid):
        raise ValidationError(
            f"Invalid job id {job_id!r}: use letters, digits and '-' (max 128 characters)"
        )
    return jid


def _is_not_found(ex: BaseException) -> bool:
    if type(ex).__name__ == "NotFound":
        return True
    return getattr(ex, "code", None) == 404 or getattr(ex, "status_code", None) == 404


def normalize_prefix(prefix: str | None) -> str:
    p = str(prefix or "").strip().lstrip("/")
    if p and not p.endswith("/"):
        p += "/"
    return p


class SynthesisOrchestrator:
    """
    Drives one job at a time through
    CREATED -> SUBMITTED -> SYNTHESIZING -> DOWNLOADING -> COMPLETED -> DOWNLOADED.

    Jobs run as independent asyncio tasks; the JobStore is the only shared
    state. Nothing raised inside a job escapes `run_job`: failures end in ERROR.
    """

    def __init__(
        self,
        store: JobStore,
        clients: ClientProvider,
        limiter: RateLimiter,
        *,
        settings=None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        poller: Poller | None = None,
    ) -> None:
        s = settings or get_settings()
        self.store = store
        self.clients = clients
        self.limiter = limiter
        self.output_dir = Path(s.output_dir)
        self.bucket = str(s.gcs_bucket_name)
        self.prefix = normalize_prefix(s.gcs_output_prefix)
        self.default_voice = VoiceParams.from_settings(s)
        self.input_mode = str(s.input_mode or "").strip().lower()
        self.max_request_bytes = int(s.max_request_bytes)
        self.chunk_safety_ratio = float(s.chunk_safety_ratio)
        self.max_sentence_length = int(s.max_sentence_length)
        self.max_input_chars = int(s.max_input_chars)
        self.max_attempts = int(s.max_attempts)
        self.poll_interval_s = float(s.poll_interval_s)
        self.timeout_s = float(s.synthesis_timeout_s)
        self.progress_low = float(s.progress_low)
        self.progress_high = float(s.progress_high)
        self.transcode_format = str(s.transcode_format or "").strip().lower().lstrip(".")
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self.poller = poller or Poller(call=self._limited)
        self._tasks: dict[str, asyncio.Task] = {}
        self._callbacks: dict[str, ProgressCallback] = {}
        # job id -> message, for jobs whose ERROR state could not be persisted
        self._persist_failed: dict[str, str] = {}

    # --- plumbing ---
    async def _limited(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await self.limiter.run_with_retry(fn, self.max_attempts)

    def _require(self, job_id: str) -> JobRecord:
        rec = self.store.get(job_id)
        if rec is None:
            raise JobNotFoundError(job_id)
        return rec

    def _update(self, job_id: str, **fields: Any) -> JobRecord:
        if "progress" in fields:
            # caller-visible progress never goes backwards
            cur = self._require(job_id)
            fields["progress"] = max(float(cur.progress), min(PROGRESS_DONE, float(fields["progress"])))
        rec = self.store.update(job_id, **fields)
        if rec is None:
            raise JobNotFoundError(job_id)
        cb = self._callbacks.get(job_id)
        if cb is not None:
            try:
                cb(rec)
            except Exception as ex:
                logger.warning("progress_callback_failed", job_id=job_id, error=str(ex))
        return rec

    def object_name_for(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}_{int(self._wall_clock() * 1000)}.wav"

    def resolve_input_mode(self, requested: str = "") -> str:
        supported = str(
            getattr(self.clients.speech(), "input_mode", "") or INPUT_MODE_SENTENCES
        ).strip().lower()
        mode = str(requested or "").strip().lower() or self.input_mode or supported
        if mode not in {INPUT_MODE_SENTENCES, INPUT_MODE_BYTES}:
            raise ValidationError(f"Unknown input mode: {mode}")
        # the provider consumes exactly one shape of input
        if mode != supported:
            raise ValidationError(
                f"Input mode {mode!r} is not supported by the speech backend (expects {supported!r})"
            )
        return mode

    def prepare_input(self, text: str, input_mode: str) -> tuple[str, tuple[str, ...]]:
        """
        Shape the text for the provider before any network call.

        Returns (text, segments); segments are only produced in bytes mode.
        """
        if not text or not text.strip():
            raise ValidationError("No text provided")
        if len(text) > self.max_input_chars:
            raise ValidationError(
                f"Text too long: {len(text)} characters (limit {self.max_input_chars})"
            )
        if input_mode == INPUT_MODE_BYTES:
            chunks = chunk_text(
                text, self.max_request_bytes, safety_ratio=self.chunk_safety_ratio
            )
            verify_chunks(chunks, self.max_request_bytes)
            return text, tuple(c.text for c in chunks)
        return normalize_sentences(text, self.max_sentence_length), ()

    # --- caller contract ---
    def create_job(self, text: str, metadata: dict[str, Any] | None = None) -> JobRecord:
        meta = dict(metadata or {})
        job_id = validate_job_id(meta["job_id"]) if meta.get("job_id") else new_id()
        ts = now_utc()
        rec = JobRecord(
            id=job_id,
            title=str(meta.get("title") or "Untitled"),
            character_count=len(text or ""),
            uploaded_filename=str(meta.get("uploaded_filename") or ""),
            state=JobState.CREATED,
            started_at=ts,
            updated_at=ts,
            voice=self.default_voice.merged(meta.get("voice")).to_dict(),
            input_mode=str(meta.get("input_mode") or self.input_mode or ""),
        )
        return self.store.create(rec)

    async def start_job(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        rec = self.create_job(text, metadata)
        task = asyncio.create_task(self.run_job(rec.id, text, on_progress=on_progress))
        self._tasks[rec.id] = task
        task.add_done_callback(lambda t, jid=rec.id: self._forget_task(jid, t))
        logger.info("job_started", job_id=rec.id, title=rec.title, characters=rec.character_count)
        return rec.id

    def _forget_task(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def wait(self, job_id: str) -> dict[str, Any]:
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.get_job_status(job_id)

    def active_jobs(self) -> list[str]:
        return [jid for jid, t in self._tasks.items() if not t.done()]

    async def shutdown(self) -> None:
        """
        Cancel running job tasks; their records keep the last persisted state
        for the recovery scanner.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with suppress(asyncio.CancelledError):
                await t
        self._tasks.clear()

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        failed = self._persist_failed.get(job_id)
        try:
            rec = self.store.get(job_id)
        except PersistenceError:
            if failed is None:
                raise
            rec = None
        if rec is None:
            if failed is None:
                raise JobNotFoundError(job_id)
            return {"id": job_id, "state": JobState.ERROR.value, "error": failed, "error_kind": "persistence", "terminal": True}
        if failed is not None and rec.is_terminal:
            self._persist_failed.pop(job_id, None)
            failed = None
        if failed is not None:
            healed = self._persist_error(job_id, failed)
            if healed is not None:
                return healed.view()
        view = rec.view()
        if failed is not None:
            view.update(
                state=JobState.ERROR.value,
                persisted_state=rec.state.value,
                error=failed,
                error_kind="persistence",
                terminal=True,
            )
        return view

    # --- job loop ---
    async def run_job(
        self,
        job_id: str,
        text: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any] | None:
        try:
            rec = self._require(job_id)
        except (JobNotFoundError, PersistenceError) as ex:
            logger.error("job_run_rejected", job_id=job_id, error=str(ex))
            return None
        if rec.state != JobState.CREATED:
            # another run owns this record; leave its state alone
            logger.warning("job_already_started", job_id=job_id, state=rec.state.value)
            return self._status_or_none(job_id)

        set_job_id(job_id)
        if on_progress is not None:
            self._callbacks[job_id] = on_progress
        try:
            self._update(job_id, progress=PROGRESS_PREPARING, step="preparing")

            mode = self.resolve_input_mode(rec.input_mode)
            payload, segments = self.prepare_input(text, mode)
            storage = self.clients.storage()
            speech = self.clients.speech()

            ensure_bucket = getattr(storage, "ensure_bucket", None)
            if ensure_bucket is not None:
                await ensure_bucket(self.bucket)

            object_name = self.object_name_for(job_id)
            await self._delete_existing(self.bucket, object_name)
            uri = storage.uri_for(self.bucket, object_name)
            request = SynthesisRequest(
                text=payload,
                voice=self.default_voice.merged(rec.voice),
                output_uri=uri,
                input_mode=mode,
                segments=segments,
            )

            handle = await self._limited(lambda: speech.submit(request))
            self._update(
                job_id,
                state=JobState.SUBMITTED,
                operation_handle=str(handle),
                remote_artifact_uri=uri,
                remote_bucket=self.bucket,
                remote_object_name=object_name,
                input_mode=mode,
                progress=self.progress_low,
                step="synthesizing",
            )
            logger.info("job_submitted", job_id=job_id, handle=str(handle), object=object_name)

            await self._await_operation(job_id, str(handle))
            await self.download_and_finalize(job_id)
        except Exception as ex:
            self.fail_job(job_id, ex)
        finally:
            self._callbacks.pop(job_id, None)
            set_job_id(None)
        return self._status_or_none(job_id)

    def _status_or_none(self, job_id: str) -> dict[str, Any] | None:
        try:
            return self.get_job_status(job_id)
        except (JobNotFoundError, PersistenceError):
            return None

    async def _delete_existing(self, bucket: str, object_name: str) -> None:
        storage = self.clients.storage()
        try:
            if await storage.exists(bucket, object_name):
                await storage.delete(bucket, object_name)
                logger.info("stale_remote_object_deleted", object=object_name)
        except Exception as ex:
            logger.warning("pre_submit_delete_failed", object=object_name, error=str(ex))

    async def poll_operation(self, handle: str) -> PollResult:
        """
        One tiered poll of a remote operation (every attempt rate limited).
        """
        return await self.poller.poll_once(self.clients.speech(), handle)

    async def _await_operation(self, job_id: str, handle: str) -> None:
        started = self._clock()
        while True:
            elapsed = self._clock() - started
            if elapsed > self.timeout_s:
                raise SynthesisTimeoutError(
                    f"Synthesis timed out after {int(self.timeout_s)}s (operation {handle})"
                )
            try:
                result = await self.poll_operation(handle)
            except Exception as ex:
                # transient; the timeout bounds how long this can go on
                logger.warning("poll_failed", job_id=job_id, handle=handle, error=str(ex))
            else:
                if result.done:
                    if result.error:
                        raise ProviderOperationError(result.error)
                    self._update(
                        job_id,
                        state=JobState.SYNTHESIZING,
                        provider_progress=100.0,
                        progress=self.progress_high,
                        step="synthesizing",
                    )
                    self.poller.forget(handle)
                    logger.info("operation_done", job_id=job_id, handle=handle, strategy=result.strategy)
                    return
                fields: dict[str, Any] = {"state": JobState.SYNTHESIZING, "step": "synthesizing"}
                if result.progress is not None:
                    fields["provider_progress"] = float(result.progress)
                    fields["progress"] = remap_progress(
                        result.progress, self.progress_low, self.progress_high
                    )
                rec = self._update(job_id, **fields)
                logger.debug("poll_progress", job_id=job_id, progress=rec.progress, strategy=result.strategy)
            await self._sleep(self.poll_interval_s)

    # --- download / finalize (shared with recovery) ---
    async def download_and_finalize(
        self,
        job_id: str,
        *,
        on_progress: ProgressCallback | None = None,
        output_dir: Path | None = None,
    ) -> JobRecord:
        """
        DOWNLOADING -> COMPLETED -> (cleanup) -> DOWNLOADED for a record whose
        remote artifact is ready. Raises on download failure; the remote object
        is left intact so it can be recovered later.
        """
        if on_progress is not None:
            self._callbacks[job_id] = on_progress
        try:
            rec = self._require(job_id)
            if rec.state == JobState.SYNTHESIZING:
                rec = self._update(
                    job_id,
                    state=JobState.DOWNLOADING,
                    progress=self.progress_high,
                    step="downloading",
                )
            elif rec.state != JobState.DOWNLOADING:
                raise ValidationError(f"Job {job_id} is not ready for download ({rec.state.value})")
            if not rec.remote_object_name:
                raise ValidationError(f"Job {job_id} has no remote object")

            bucket = rec.remote_bucket or self.bucket
            local = await self._download(
                job_id, bucket, rec.remote_object_name, Path(output_dir or self.output_dir)
            )
            final = await self._post_process(job_id, local)
            self._update(
                job_id,
                state=JobState.COMPLETED,
                local_path=str(final),
                local_filename=final.name,
                completed_at=now_utc(),
                progress=PROGRESS_DONE,
                step="completed",
            )
            logger.info("job_completed", job_id=job_id, path=str(final))
            await self._cleanup_remote(job_id)
            return self._require(job_id)
        finally:
            if on_progress is not None:
                self._callbacks.pop(job_id, None)

    async def _download(self, job_id: str, bucket: str, object_name: str, output_dir: Path) -> Path:
        storage = self.clients.storage()
        local = output_dir / Path(object_name).name
        band = PROGRESS_DOWNLOAD_END - self.progress_high
        last = {"pct": -1}

        def _on_bytes(received: int, total: int) -> None:
            if total <= 0:
                return
            pct = int(self.progress_high + band * min(1.0, received / total))
            if pct <= last["pct"]:
                return
            last["pct"] = pct
            try:
                self._update(job_id, progress=pct, step="downloading")
            except Exception as ex:
                logger.warning("download_progress_update_failed", job_id=job_id, error=str(ex))

        try:
            size = await storage.download_streaming(bucket, object_name, local, _on_bytes)
        except DownloadError:
            raise
        except Exception as ex:
            raise DownloadError(f"download of {object_name} failed: {error_message(ex)}") from ex
        logger.info("artifact_downloaded", job_id=job_id, path=str(local), bytes=size)
        return local

    async def _post_process(self, job_id: str, local: Path) -> Path:
        fmt = self.transcode_format
        if not fmt or local.suffix.lower() == f".{fmt}":
            return local
        self._update(job_id, progress=PROGRESS_CONVERTING, step="converting")
        dst = local.with_suffix(f".{fmt}")
        transcoder = self.clients.transcoder()
        try:
            ok = bool(await asyncio.to_thread(transcoder.transcode, local, dst, fmt))
        except Exception as ex:
            logger.warning(
                "transcode_failed",
                job_id=job_id,
                error_kind=TranscodeError.kind,
                error=str(ex),
            )
            ok = False
        if not ok:
            logger.warning("transcode_fallback", job_id=job_id, path=str(local))
            return local
        try:
            local.unlink(missing_ok=True)
        except OSError as ex:
            logger.warning("intermediate_delete_failed", job_id=job_id, path=str(local), error=str(ex))
        return dst

    async def _cleanup_remote(self, job_id: str) -> bool:
        rec = self._require(job_id)
        bucket = rec.remote_bucket or self.bucket
        name = rec.remote_object_name
        if name:
            try:
                await self.clients.storage().delete(bucket, name)
            except Exception as ex:
                if not _is_not_found(ex):
                    logger.warning("remote_cleanup_failed", job_id=job_id, object=name, error=str(ex))
                    return False
        self._update(job_id, state=JobState.DOWNLOADED, remote_cleaned_up=True, step="downloaded")
        logger.info("remote_cleaned_up", job_id=job_id, object=name)
        return True

    async def retry_remote_cleanup(self, job_id: str) -> dict[str, Any]:
        """
        Caller-triggered retry of the remote delete for a COMPLETED job.
        """
        rec = self._require(job_id)
        if rec.state == JobState.COMPLETED:
            await self._cleanup_remote(job_id)
        elif rec.state != JobState.DOWNLOADED:
            raise ValidationError(f"Job {job_id} is not completed ({rec.state.value})")
        return self.get_job_status(job_id)

    def fail_job(self, job_id: str, ex: BaseException) -> None:
        """
        Record `ex` as the job's terminal error. Never raises.
        """
        kind = error_kind(ex)
        msg = error_message(ex)
        logger.error("job_failed", job_id=job_id, error_kind=kind, error=msg)
        try:
            rec = self.store.get(job_id)
            if rec is None or rec.state in {JobState.COMPLETED, JobState.DOWNLOADED, JobState.ERROR}:
                return
            self.store.update(
                job_id, state=JobState.ERROR, error=msg, error_kind=kind, step="error"
            )
        except Exception as pex:
            # stored state is now unknown; report ERROR from memory
            self._persist_failed[job_id] = f"{msg} (state not persisted: {pex})"
            logger.error("job_error_not_persisted", job_id=job_id, error=str(pex))

    def _persist_error(self, job_id: str, message: str) -> JobRecord | None:
        """
        Retry writing an ERROR that could not be stored earlier; forget it once
        the store has it.
        """
        try:
            rec = self.store.update(
                job_id,
                state=JobState.ERROR,
                error=message,
                error_kind=PersistenceError.kind,
                step="error",
            )
        except Exception as ex:
            logger.debug("job_error_still_not_persisted", job_id=job_id, error=str(ex))
            return None
        self._persist_failed.pop(job_id, None)
        logger.info("job_error_persisted", job_id=job_id)
        return rec
