"""Job status, event stream and cancellation endpoints."""
from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..deps.auth import require_auth
from ..deps.providers import get_job_facade, get_job_registry, get_job_runner
from ..jobs.facade import JobFacade
from ..jobs.registry import JobRegistry
from ..jobs.runner import BackgroundRunner
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import CancelRequest

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("")
async def list_jobs(
    owner: Optional[str] = None,
    kind_prefix: str = "",
    facade: JobFacade = Depends(get_job_facade),
) -> ApiResponse:
    """Jobs newest first.  Without ``owner`` every owner's jobs are listed."""
    views = facade.list_jobs(owner, kind_prefix)
    return ApiResponse.success([v.model_dump(mode="json") for v in views], total=len(views))


@router.get("/stats")
async def job_stats(registry: JobRegistry = Depends(get_job_registry)) -> ApiResponse:
    return ApiResponse.success(registry.stats())


@router.get("/{job_id}")
async def get_job(job_id: str, facade: JobFacade = Depends(get_job_facade)) -> ApiResponse:
    return ApiResponse.success(facade.get_job(job_id).model_dump(mode="json"))


@router.get("/{job_id}/events")
async def job_events(
    job_id: str,
    facade: JobFacade = Depends(get_job_facade),
    runner: BackgroundRunner = Depends(get_job_runner),
):
    facade.get_job(job_id)

    async def _generate():
        async for event in runner.subscribe_events(job_id):
            yield {"event": event.get("event", "message"), "data": json.dumps(event, default=str)}

    return EventSourceResponse(_generate())


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    body: Optional[CancelRequest] = Body(default=None),
    actor: str = Depends(require_auth),
    facade: JobFacade = Depends(get_job_facade),
) -> ApiResponse:
    requested_by = body.requested_by if body is not None else actor
    accepted = await facade.cancel_job(job_id, requested_by)
    if not accepted:
        resp = ApiResponse.fail(f"Job {job_id} is finished or does not support cancellation")
        return JSONResponse(status_code=409, content=resp.model_dump())
    return ApiResponse.success({"job_id": job_id, "cancel_requested": True})
