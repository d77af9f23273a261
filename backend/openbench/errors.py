"""Domain failures raised by the design engines and their HTTP mapping."""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

# purpose: one closed taxonomy shared by lifecycle, execution and review services
# status: active

logger = logging.getLogger(__name__)


class DesignError(RuntimeError):
    """Base error for design lifecycle operations."""

    status_code = 500


class ValidationError(DesignError):
    """Raised when input is malformed or misses a required rule."""

    status_code = 400


class Forbidden(DesignError):
    """Raised when the caller is authenticated but not permitted."""

    status_code = 403


class NotFound(DesignError):
    """Raised for missing records, including drafts hidden from non-authors."""

    status_code = 404


class Conflict(DesignError):
    """Raised when an action was already taken and may not be repeated."""

    status_code = 409


async def design_error_handler(request: Request, exc: DesignError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
