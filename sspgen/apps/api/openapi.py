from __future__ import annotations

from typing import Any

from sspgen.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Missing required field: system_id"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    404: _response("Not found", "NOT_FOUND", "System not found"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}

GENERATION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    502: _response(
        "Narrative generation failed; the run was marked failed",
        "GENERATION_MALFORMED",
        "Narrative generation returned invalid JSON",
        details={"run_id": "3f2c9c1e0f6b4c59a0a1d1c3b7e4f0aa", "write_failures": []},
    ),
    503: _response("Narrative provider unavailable", "GENERATION_UNAVAILABLE", "llm.openai is temporarily unavailable"),
    504: _response("Narrative provider timed out", "GENERATION_TIMEOUT", "Narrative generation timed out after 60000ms"),
}
