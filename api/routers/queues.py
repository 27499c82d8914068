"""Durable lane queue inspection endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from ..deps.auth import require_auth
from ..deps.providers import get_gateway, get_job_facade
from ..jobs.facade import JobFacade
from ..jobs.gateway import DurableQueueGateway
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import CleanupRequest

router = APIRouter(prefix="/api/queues", tags=["queues"])


@router.get("/stats")
async def queue_stats(gateway: DurableQueueGateway = Depends(get_gateway)) -> ApiResponse:
    """Per-lane job counts by state."""
    return ApiResponse.success(await gateway.stats())


@router.get("/owners/{owner_id}/jobs")
async def owner_jobs(owner_id: str, gateway: DurableQueueGateway = Depends(get_gateway)) -> ApiResponse:
    jobs = await gateway.list_owner_jobs(owner_id)
    return ApiResponse.success([j.model_dump(mode="json") for j in jobs], total=len(jobs))


@router.get("/{lane}/jobs/{job_id}")
async def lane_job(lane: str, job_id: str, facade: JobFacade = Depends(get_job_facade)) -> ApiResponse:
    status = await facade.get_queue_status(lane, job_id)
    return ApiResponse.success(status.model_dump(mode="json"))


@router.post("/{lane}/cleanup", dependencies=[Depends(require_auth)])
async def cleanup_lane(
    lane: str,
    body: Optional[CleanupRequest] = Body(default=None),
    gateway: DurableQueueGateway = Depends(get_gateway),
) -> ApiResponse:
    """Delete finished jobs older than ``max_age_seconds`` (default 24 hours)."""
    from ... import config as _cfg

    max_age = body.max_age_seconds if body and body.max_age_seconds else _cfg.QUEUE_CLEANUP_MAX_AGE_SECONDS
    removed = await gateway.cleanup(lane, max_age)
    return ApiResponse.success({"lane": lane, "removed": removed})
