"""Runtime config management endpoints."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..config import RuntimeConfig
from ..deps.auth import require_auth
from ..deps.providers import get_runtime_config
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import ConfigPatch

router = APIRouter(prefix="/api/config", tags=["config"])


def _lane_table() -> Dict[str, Dict[str, Any]]:
    from ... import config as cfg

    return {
        name: {
            "concurrency": lane.concurrency,
            "max_attempts": lane.max_attempts,
            "backoff_delay_seconds": lane.backoff_delay_seconds,
            "batch_size": lane.batch_size,
            "keep_completed": lane.keep_completed,
            "keep_failed": lane.keep_failed,
        }
        for name, lane in cfg.QUEUE_LANES.items()
    }


@router.get("")
async def get_config(rc: RuntimeConfig = Depends(get_runtime_config)) -> ApiResponse:
    return ApiResponse.success({"adjustable": rc.get_adjustable(), "lanes": _lane_table()})


@router.get("/validate")
async def validate_config_endpoint() -> ApiResponse:
    """Run config validation and return any issues found.

    Each issue has a ``level`` (WARNING or ERROR) and a ``message``
    describing what is wrong and how to fix it.
    """
    from ...config import validate_config

    issues = validate_config()
    return ApiResponse.success({
        "issues": issues,
        "count": len(issues),
        "errors": sum(1 for i in issues if i.get("level") == "ERROR"),
        "warnings": sum(1 for i in issues if i.get("level") == "WARNING"),
    })


@router.patch("", dependencies=[Depends(require_auth)])
async def patch_config(
    body: ConfigPatch,
    rc: RuntimeConfig = Depends(get_runtime_config),
) -> ApiResponse:
    try:
        new_state = rc.patch(body.updates)
    except (KeyError, ValueError) as exc:
        resp = ApiResponse.fail(str(exc).strip("'\""))
        return JSONResponse(status_code=422, content=resp.model_dump())
    return ApiResponse.success(new_state)
