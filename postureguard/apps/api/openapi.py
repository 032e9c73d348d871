from __future__ import annotations

from typing import Any

from postureguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Provider missing or rejected", "PROVIDER_NOT_CONFIGURED", "No directory provider is configured"),
    404: _error_response("Not found", "NOT_FOUND", "Org unit not found"),
    409: _error_response("Scan already running", "SCAN_ALREADY_RUNNING", "A scan is already running"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    503: _error_response("Provider unavailable", "PROVIDER_UNAVAILABLE", "Provider rate limited the request"),
}
