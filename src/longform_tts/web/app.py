from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from longform_tts import __version__
from longform_tts.config import get_settings
from longform_tts.errors import PersistenceError
from longform_tts.ops.retention import retention_loop, run_once
from longform_tts.service import SynthesisService
from longform_tts.utils.log import logger
from longform_tts.web.routes_jobs import router as jobs_router
from longform_tts.web.routes_recovery import router as recovery_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    svc = getattr(app.state, "service", None)
    if svc is None:
        svc = SynthesisService(settings=s)
        app.state.service = svc

    if bool(s.prune_on_startup):
        try:
            run_once(store=svc.store)
        except PersistenceError as ex:
            logger.warning("startup_prune_failed", error=str(ex))

    prune_task = None
    if int(s.prune_interval_s) > 0:
        prune_task = asyncio.create_task(
            retention_loop(store=svc.store, interval_s=float(s.prune_interval_s))
        )
    logger.info("server_started", version=__version__, bucket=str(s.gcs_bucket_name))
    try:
        yield
    finally:
        if prune_task is not None:
            prune_task.cancel()
            with suppress(asyncio.CancelledError):
                await prune_task
        await svc.shutdown()
        logger.info("server_stopped")


def create_app(service: SynthesisService | None = None) -> FastAPI:
    app = FastAPI(title="longform-tts", version=__version__, lifespan=lifespan)
    if service is not None:
        app.state.service = service
    app.include_router(jobs_router)
    app.include_router(recovery_router)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
