"""Build ServiceError diagnostics from vendor HTTP responses."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlparse

import httpx

from avatar_voice.core.errors import ServiceDiagnostics, ServiceName

HINTS: dict[ServiceName, dict[int, str]] = {
    "entra": {
        401: (
            "Entra client credentials may be invalid. Verify ENTRA_TENANT_ID, "
            "ENTRA_CLIENT_ID, and ENTRA_CLIENT_SECRET."
        ),
        403: (
            "Entra token was rejected. Verify admin consent, app permissions, and that "
            "the token audience/scope matches Power Platform Copilot API."
        ),
    },
    "copilot": {
        401: (
            "Copilot request was unauthorized. Verify the Direct Line secret or bearer "
            "token and the tenant/app configuration."
        ),
        403: (
            "Copilot rejected the request. Check Entra admin consent, app permissions, "
            "and token audience/scope."
        ),
    },
}


def parse_json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return None


def parse_error_payload(payload: Any) -> tuple[str | None, str | None]:
    """Return ``(code, message)`` from OAuth-style or nested ``error`` payloads."""

    if not isinstance(payload, dict):
        return None, None

    error = payload.get("error")
    if isinstance(error, dict):
        return (
            error.get("code") or payload.get("code"),
            error.get("message") or payload.get("message") or payload.get("error_description"),
        )
    code = error if isinstance(error, str) else payload.get("code")
    message = payload.get("error_description") or payload.get("message")
    return code, message


def build_service_diagnostics(
    service: ServiceName,
    url: str,
    *,
    response: httpx.Response | None = None,
    payload: Any = None,
) -> ServiceDiagnostics:
    parsed = urlparse(url)
    diagnostics = ServiceDiagnostics(
        service=service,
        endpoint_host=parsed.netloc or None,
        endpoint_path=parsed.path or None,
    )
    if response is None:
        return diagnostics

    headers = response.headers
    if payload is None:
        payload = parse_json_body(response)
    if payload is None and response.text:
        payload = {"message": response.text[:500]}
    code, message = parse_error_payload(payload)

    diagnostics.status = response.status_code
    diagnostics.request_id = headers.get("x-ms-request-id") or headers.get("request-id")
    diagnostics.correlation_id = headers.get("x-ms-correlation-request-id") or headers.get(
        "x-correlation-id"
    )
    diagnostics.traceparent = headers.get("traceparent")
    diagnostics.error_code = code
    diagnostics.error_message = message
    return diagnostics


def hint_for_status(service: ServiceName, status: int | None) -> str | None:
    if status is None:
        return None
    return HINTS.get(service, {}).get(status)
