from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from depositbridge.apps.api.response import error_response
from depositbridge.core.errors import ConfigurationError, DepositBridgeError, JobNotFoundError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code", "message", ...}) or a plain string.
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), details or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=422)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Pydantic error contexts can hold exception objects that JSON cannot encode.
    errors = []
    for error in exc.errors():
        cleaned = {key: value for key, value in error.items() if key != "ctx"}
        errors.append(cleaned)
    return errors


async def domain_exception_handler(request: Request, exc: DepositBridgeError) -> JSONResponse:
    if isinstance(exc, JobNotFoundError):
        status_code, code = 404, "JOB_NOT_FOUND"
    elif isinstance(exc, ConfigurationError):
        status_code, code = 500, "CONFIGURATION_ERROR"
    else:
        status_code, code = 500, "INTERNAL_ERROR"
    if status_code >= 500:
        logger.error("api_domain_error path=%s error=%s", request.url.path, exc)
    payload = error_response(request=request, code=code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
