from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from longform_tts.web._helpers import _get_service, http_errors

router = APIRouter(prefix="/api/recovery")


@router.get("/scan")
async def scan(request: Request) -> dict[str, Any]:
    svc = _get_service(request)
    with http_errors():
        items = await svc.scan_recoverable()
    return {"items": items, "count": len(items)}


@router.get("/bucket-files")
async def bucket_files(request: Request) -> dict[str, Any]:
    svc = _get_service(request)
    files = await svc.list_bucket_files()
    return {"files": files, "count": len(files)}


@router.post("/download")
async def download(request: Request) -> dict[str, Any]:
    svc = _get_service(request)
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="JSON object required")
    name = str(body.get("remote_object_name") or body.get("fileName") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="remote_object_name required")
    job_id = body.get("job_id") or None
    with http_errors():
        return await svc.recover_item(name, job_id=job_id)


@router.get("/check-operation/{job_id}")
async def check_operation(request: Request, job_id: str) -> dict[str, Any]:
    svc = _get_service(request)
    with http_errors():
        return await svc.check_operation(job_id)


@router.get("/tracked-jobs")
async def tracked_jobs(request: Request) -> dict[str, Any]:
    svc = _get_service(request)
    with http_errors():
        items = [r.view() for r in svc.tracked_jobs()]
    return {"items": items, "count": len(items)}
