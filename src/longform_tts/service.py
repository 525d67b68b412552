from __future__ import annotations

from pathlib import Path
from typing import Any

from longform_tts.config import get_settings
from longform_tts.jobs.models import JobRecord
from longform_tts.jobs.orchestrator import ProgressCallback, SynthesisOrchestrator
from longform_tts.jobs.store import JobStore
from longform_tts.ops.retention import run_once
from longform_tts.providers.factory import ClientProvider, build_client_provider
from longform_tts.recovery.scanner import RecoveryScanner
from longform_tts.utils.ratelimit import RateLimiter


class SynthesisService:
    """
    Caller-facing facade: wires the store, limiter, clients, orchestrator and
    recovery scanner from settings. The API and CLI only talk to this.
    """

    def __init__(
        self,
        *,
        settings=None,
        store: JobStore | None = None,
        clients: ClientProvider | None = None,
        limiter: RateLimiter | None = None,
        orchestrator: SynthesisOrchestrator | None = None,
        scanner: RecoveryScanner | None = None,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        self.store = store or JobStore(Path(s.jobs_db_path()))
        self.clients = clients or build_client_provider(s)
        self.limiter = limiter or RateLimiter.from_settings(s)
        self.orchestrator = orchestrator or SynthesisOrchestrator(
            self.store, self.clients, self.limiter, settings=s
        )
        self.scanner = scanner or RecoveryScanner(
            self.store, self.clients, self.orchestrator, settings=s
        )

    async def start_job(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        return await self.orchestrator.start_job(text, metadata, on_progress=on_progress)

    async def run_job(self, text: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create and run a job inline (CLI path); returns the final status view.
        """
        job_id = await self.start_job(text, metadata)
        return await self.orchestrator.wait(job_id)

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        return self.orchestrator.get_job_status(job_id)

    def list_jobs(self, *, state: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return [r.view() for r in self.store.list(state=state, limit=limit)]

    def tracked_jobs(self) -> list[JobRecord]:
        return self.scanner.tracked_jobs()

    async def retry_cleanup(self, job_id: str) -> dict[str, Any]:
        return await self.orchestrator.retry_remote_cleanup(job_id)

    async def scan_recoverable(self) -> list[dict[str, Any]]:
        items = await self.scanner.scan(self.scanner.bucket, self.scanner.output_dir)
        return [i.to_dict() for i in items]

    async def list_bucket_files(self) -> list[dict[str, Any]]:
        return await self.scanner.list_remote_artifacts()

    async def recover_item(
        self,
        remote_object_name: str,
        *,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        return await self.scanner.recover(
            None, remote_object_name, None, job_id=job_id, on_progress=on_progress
        )

    async def check_operation(self, job_id: str) -> dict[str, Any]:
        return await self.scanner.check_operation(job_id)

    def prune_stale(self, retention_days: int | None = None) -> int:
        return run_once(store=self.store, retention_days=retention_days).jobs_removed

    async def shutdown(self) -> None:
        await self.orchestrator.shutdown()
