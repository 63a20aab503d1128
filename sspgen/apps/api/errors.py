from __future__ import annotations

from dataclasses import asdict
import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sspgen.apps.api.response import error_response, is_versioned_request
from sspgen.core.errors import (
    BadRequestError,
    GenerationEmptyError,
    GenerationError,
    GenerationMalformedError,
    GenerationTimeoutError,
    IntegrationUnavailableError,
    NotFoundError,
    PersistenceError,
    ProviderAuthError,
    ProviderConfigError,
    RunFailedError,
    SspgenError,
    UnauthorizedError,
)


logger = logging.getLogger(__name__)


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
    504: "GATEWAY_TIMEOUT",
}

# Ordered most specific first; the first isinstance match wins.
_DOMAIN_ERROR_MAP: tuple[tuple[type[BaseException], int, str], ...] = (
    (UnauthorizedError, 401, "AUTH_UNAUTHORIZED"),
    (BadRequestError, 400, "BAD_REQUEST"),
    (NotFoundError, 404, "NOT_FOUND"),
    (GenerationEmptyError, 502, "GENERATION_EMPTY"),
    (GenerationMalformedError, 502, "GENERATION_MALFORMED"),
    (GenerationTimeoutError, 504, "GENERATION_TIMEOUT"),
    (IntegrationUnavailableError, 503, "GENERATION_UNAVAILABLE"),
    (ProviderConfigError, 503, "PROVIDER_MISCONFIGURED"),
    (ProviderAuthError, 503, "PROVIDER_AUTH_ERROR"),
    (GenerationError, 502, "GENERATION_FAILED"),
    (PersistenceError, 500, "PERSISTENCE_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def map_domain_error(exc: BaseException) -> tuple[int, str]:
    # Run failures are reported by what caused them.
    target = exc.cause if isinstance(exc, RunFailedError) else exc
    for error_type, status_code, code in _DOMAIN_ERROR_MAP:
        if isinstance(target, error_type):
            return status_code, code
    if isinstance(exc, RunFailedError):
        return 502, "GENERATION_FAILED"
    return 500, "INTERNAL_ERROR"


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def domain_exception_handler(request: Request, exc: SspgenError) -> JSONResponse:
    status_code, code = map_domain_error(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, RunFailedError):
        details = {
            "run_id": exc.run_id,
            "write_failures": [asdict(failure) for failure in exc.write_failures],
        }
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Paths outside the versioned API keep Starlette's plain shape.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
