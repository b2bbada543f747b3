from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from outreach_pipeline.runtime.service import ConflictError, InvalidArgumentError, NotFoundError, PipelineError


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


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


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Keep errors safe by default; details are still traceable via server logs / sqlite events.
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )


_PIPELINE_ERROR_CODES: dict[type[PipelineError], tuple[int, str]] = {
    NotFoundError: (404, "not_found"),
    ConflictError: (409, "conflict"),
    InvalidArgumentError: (400, "invalid_argument"),
}


def api_error_from_pipeline(exc: PipelineError) -> APIError:
    status_code, code = 500, "internal"
    for cls, mapped in _PIPELINE_ERROR_CODES.items():
        if isinstance(exc, cls):
            status_code, code = mapped
            break
    return APIError(status_code=status_code, code=code, message=str(exc))


async def pipeline_error_handler(_req: Request, exc: PipelineError) -> JSONResponse:
    err = api_error_from_pipeline(exc)
    return error_response(status_code=err.status_code, code=err.code, message=err.message)
