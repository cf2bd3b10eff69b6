from __future__ import annotations

from typing import Any

from notifyhub.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Invalid service credentials"),
    ),
    402: _response(
        "Budget exceeded",
        _error_example(
            code="BUDGET_EXCEEDED",
            message="Monthly budget reached for tenant-a:*:sms",
            details={"override_eligible": True, "budget_micros": 5000000, "spend_micros": 5000000, "scope": "tenant-a:*:sms"},
        ),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="OVERRIDE_REJECTED", message="Admin credential is not valid for overrides"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Notification not found")),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Unknown channels: fax", details={"field": "channels"}),
    ),
    429: _response(
        "Rate limited",
        _error_example(
            code="RATE_LIMITED",
            message="Rate limit exceeded for user scope",
            details={"retry_after_ms": 60000, "scope": "user"},
        ),
    ),
    503: _response(
        "Provider unavailable",
        _error_example(code="PROVIDER_UNAVAILABLE", message="No provider available for channel sms"),
    ),
}
