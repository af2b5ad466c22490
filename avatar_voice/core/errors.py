"""Exception types shared by the turn orchestrator and its vendor adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ServiceName = Literal["entra", "copilot", "elevenlabs"]


class ConversationError(Exception):
    """Base class for conversation failures."""


class SigninCardNotPendingError(ConversationError):
    """Raised when a consent action is requested without a matching pending card."""


@dataclass
class ServiceDiagnostics:
    """Request metadata captured when a vendor call fails."""

    service: ServiceName
    status: int | None = None
    endpoint_host: str | None = None
    endpoint_path: str | None = None
    request_id: str | None = None
    correlation_id: str | None = None
    traceparent: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "service": self.service,
            "status": self.status,
            "request_id": self.request_id,
            "correlation_id": self.correlation_id,
            "traceparent": self.traceparent,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }
        if self.endpoint_host or self.endpoint_path:
            payload["endpoint"] = {"host": self.endpoint_host, "path": self.endpoint_path}
        payload.update(self.extra)
        return {k: v for k, v in payload.items() if v is not None}


class ServiceError(ConversationError):
    """A vendor or network call failed; carries diagnostics and an optional hint."""

    def __init__(
        self,
        message: str,
        *,
        diagnostics: ServiceDiagnostics,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics
        self.hint = hint

    @property
    def status(self) -> int | None:
        return self.diagnostics.status


class SpeechSynthesisError(ServiceError):
    """Text-to-speech synthesis failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(
            message,
            diagnostics=ServiceDiagnostics(service="elevenlabs", status=status),
        )
