from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.wf.errors import (
    BackendError,
    ConcurrentClaimError,
    DuplicateJobError,
    DuplicateNameError,
    InvalidArgumentError,
    InvalidPropertyError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
)


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


# Most specific classes first: lookup walks this in order.
_BACKEND_ERRORS: tuple[tuple[type[BackendError], int, str], ...] = (
    (NotFoundError, 404, "not_found"),
    (DuplicateNameError, 409, "conflict"),
    (DuplicateJobError, 409, "conflict"),
    (ConcurrentClaimError, 409, "claim_conflict"),
    (InvalidStateError, 409, "invalid_state"),
    (InvalidPropertyError, 400, "invalid_argument"),
    (InvalidArgumentError, 400, "invalid_argument"),
    (StoreUnavailableError, 503, "dependency_unavailable"),
)


def api_error_from_backend(exc: BackendError) -> APIError:
    for cls, status_code, code in _BACKEND_ERRORS:
        if isinstance(exc, cls):
            return APIError(status_code=status_code, code=code, message=exc.message, details=exc.details or None)
    return APIError(status_code=500, code="internal", message=exc.message)


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def backend_error_handler(_req: Request, exc: BackendError) -> JSONResponse:
    err = api_error_from_backend(exc)
    details = dict(err.details or {})
    details.setdefault("type", type(exc).__name__)
    return error_response(status_code=err.status_code, code=err.code, message=err.message, details=details)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled error on %s %s", req.method, req.url.path, exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
