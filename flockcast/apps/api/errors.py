from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from flockcast.core.errors import (
    ConnectionBudgetExceeded,
    DeadLetterNotFoundError,
    DeadLetterStateError,
    FlockcastError,
    TenantNotFoundError,
    TenantSuspendedError,
)


logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: tuple[tuple[type[FlockcastError], int, str], ...] = (
    (TenantNotFoundError, 404, "TENANT_NOT_FOUND"),
    (DeadLetterNotFoundError, 404, "NOT_FOUND"),
    (TenantSuspendedError, 409, "TENANT_SUSPENDED"),
    (DeadLetterStateError, 409, "CONFLICT"),
    (ConnectionBudgetExceeded, 503, "SERVICE_UNAVAILABLE"),
)


def error_payload(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def flockcast_exception_handler(request: Request, exc: FlockcastError) -> JSONResponse:
    # Map domain errors to stable codes; anything unmapped is an internal error.
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return JSONResponse(content=error_payload(code, str(exc)), status_code=status_code)
    logger.error("unmapped_domain_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(content=error_payload("INTERNAL_ERROR", "Internal error"), status_code=500)
