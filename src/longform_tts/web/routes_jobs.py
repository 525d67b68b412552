from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from longform_tts.web._helpers import _get_service, http_errors

router = APIRouter()


@router.post("/api/tts/jobs", status_code=202)
async def submit_job(request: Request) -> dict[str, Any]:
    svc = _get_service(request)
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="JSON object required")
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="No text provided")
    metadata = {
        k: body.get(k)
        for k in ("title", "uploaded_filename", "voice", "input_mode", "job_id")
        if body.get(k) is not None
    }
    if "voice" in metadata and not isinstance(metadata["voice"], dict):
        raise HTTPException(status_code=422, detail="voice must be an object")
    with http_errors():
        job_id = await svc.start_job(text, metadata)
        return {"job_id": job_id, "status": svc.get_job_status(job_id)}


@router.get("/api/tts/jobs")
async def list_jobs(request: Request, state: str | None = None, limit: int = 100) -> dict[str, Any]:
    svc = _get_service(request)
    limit_i = max(1, min(1000, int(limit)))
    try:
        items = svc.list_jobs(state=state.upper() if state else None, limit=limit_i)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown state: {state}") from None
    return {"items": items, "count": len(items)}


@router.get("/api/tts/jobs/{job_id}")
async def get_job(request: Request, job_id: str) -> dict[str, Any]:
    svc = _get_service(request)
    with http_errors():
        return svc.get_job_status(job_id)


@router.post("/api/tts/jobs/{job_id}/cleanup")
async def retry_cleanup(request: Request, job_id: str) -> dict[str, Any]:
    svc = _get_service(request)
    with http_errors():
        return await svc.retry_cleanup(job_id)
