"""Exception to HTTP status mapping and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .jobs.facade import GatewayUnavailableError, JobNotFoundError
from .jobs.gateway import UnknownLaneError
from .jobs.runner import ActiveJobExistsError
from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Error → HTTP mapping ────────────────────────────────────────────

_EXCEPTION_STATUS = {
    JobNotFoundError: 404,
    UnknownLaneError: 404,
    ActiveJobExistsError: 409,
    ValueError: 422,
    GatewayUnavailableError: 503,
}


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        resp = ApiResponse.fail(str(exc))
        return JSONResponse(status_code=status_code, content=resp.model_dump())

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    # Catch-all for unexpected errors (also handles module-aliased exceptions)
    _NAME_STATUS = {cls.__name__: code for cls, code in _EXCEPTION_STATUS.items()}

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        # Known exceptions can bypass the registered handlers when the
        # package is imported under two names (api.errors.X vs
        # catalog_jobs.api.errors.X).
        status = _NAME_STATUS.get(type(exc).__name__)
        if status is not None:
            resp = ApiResponse.fail(str(exc))
            return JSONResponse(status_code=status, content=resp.model_dump())
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
