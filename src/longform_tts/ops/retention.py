from __future__ import annotations

import asyncio
from dataclasses import dataclass

from longform_tts.config import get_settings
from longform_tts.errors import PersistenceError
from longform_tts.jobs.store import JobStore
from longform_tts.utils.log import logger


@dataclass(frozen=True, slots=True)
class RetentionResult:
    jobs_removed: int
    retention_days: int


def run_once(*, store: JobStore, retention_days: int | None = None) -> RetentionResult:
    s = get_settings()
    days = int(s.job_retention_days if retention_days is None else retention_days)
    removed = store.prune_stale(retention_days=days)
    logger.info("retention_done", jobs_removed=removed, retention_days=days)
    return RetentionResult(jobs_removed=removed, retention_days=days)


async def retention_loop(*, store: JobStore, interval_s: float, retention_days: int | None = None) -> None:
    try:
        while True:
            await asyncio.sleep(float(interval_s))
            try:
                await asyncio.to_thread(run_once, store=store, retention_days=retention_days)
            except PersistenceError as ex:
                logger.warning("retention_loop_failed", error=str(ex))
    except asyncio.CancelledError:
        logger.info("task stopped", task="retention")
        return
