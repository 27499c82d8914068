"""Liveness and engine status endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ... import __version__
from ..deps.providers import get_gateway, get_job_registry, get_job_runner
from ..jobs.gateway import DurableQueueGateway
from ..jobs.registry import JobRegistry
from ..jobs.runner import BackgroundRunner
from ..schemas.envelope import ApiResponse

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health(
    registry: JobRegistry = Depends(get_job_registry),
    runner: BackgroundRunner = Depends(get_job_runner),
    gateway: DurableQueueGateway = Depends(get_gateway),
) -> ApiResponse:
    return ApiResponse.success({
        "status": "ok",
        "version": __version__,
        "registry": {"size": len(registry), "capacity": registry.retention.capacity},
        "running_jobs": runner.pending_count,
        "queue": {"running": gateway.running, "lanes": gateway.lanes},
    })
