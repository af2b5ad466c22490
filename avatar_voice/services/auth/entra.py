"""Entra ID helpers for silent, connection-scoped credentials."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
import jwt

from avatar_voice.core.errors import ServiceError
from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings
from avatar_voice.services.diagnostics import (
    build_service_diagnostics,
    hint_for_status,
    parse_json_body,
)

logger = get_logger(__name__)

TOKEN_REFRESH_BUFFER_SECONDS = 5 * 60
# OAuth error codes meaning the user has to go through an interactive prompt.
INTERACTION_REQUIRED_ERRORS = {
    "interaction_required",
    "consent_required",
    "login_required",
    "invalid_grant",
}
SAFE_CLAIM_KEYS = ("aud", "tid", "appid", "azp", "scp", "exp")


def get_safe_token_claims(access_token: str) -> dict[str, Any]:
    """Decode the non-sensitive claims of a JWT without verifying it.

    Only used for diagnostics; returns ``{}`` for opaque or malformed tokens.
    """

    try:
        payload = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}

    claims: dict[str, Any] = {}
    for key in SAFE_CLAIM_KEYS:
        value = payload.get(key)
        if key == "exp" and isinstance(value, (int, float)):
            claims[key] = int(value)
        elif isinstance(value, str):
            claims[key] = value
    roles = payload.get("roles")
    if isinstance(roles, list):
        claims["roles"] = [role for role in roles if isinstance(role, str)]
    return claims


@dataclass
class _CachedToken:
    access_token: str
    expires_at: float


class EntraSilentCredentialProvider:
    """Acquire connection tokens from a signed-in user's refresh token.

    ``acquire(resource_uri)`` returns ``None`` when Entra says the user must
    consent or sign in interactively, and raises ``ServiceError`` for every
    other failure. Tokens are cached per resource for this session only.
    """

    def __init__(
        self,
        *,
        refresh_token: str | None,
        tenant_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        session_id: str | None = None,
    ) -> None:
        settings = get_settings()
        self.session_id = session_id
        self._refresh_token = (refresh_token or "").strip() or None
        self._tenant_id = tenant_id or settings.entra_tenant_id
        self._client_id = client_id or settings.entra_client_id
        self._client_secret = client_secret or settings.entra_client_secret
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=settings.http_timeout_seconds, connect=10.0)
        )
        self._cache: dict[str, _CachedToken] = {}

    @property
    def token_endpoint(self) -> str:
        return f"https://login.microsoftonline.com/{self._tenant_id}/oauth2/v2.0/token"

    @property
    def configured(self) -> bool:
        return bool(self._refresh_token and self._tenant_id and self._client_id)

    async def acquire(self, resource_uri: str) -> str | None:
        cached = self._cache.get(resource_uri)
        if cached and cached.expires_at - TOKEN_REFRESH_BUFFER_SECONDS > time.time():
            return cached.access_token

        if not self.configured:
            self._log("silent_acquire_skipped", {"reason": "no_refresh_token_or_config"})
            return None

        form = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "refresh_token": self._refresh_token,
            "scope": f"{resource_uri} offline_access",
        }
        if self._client_secret:
            form["client_secret"] = self._client_secret

        try:
            response = await self._client.post(self.token_endpoint, data=form)
        except httpx.HTTPError as exc:
            raise ServiceError(
                f"Failed to acquire Entra token: {exc}",
                diagnostics=build_service_diagnostics("entra", self.token_endpoint),
                hint="Network or DNS issue while contacting Entra token endpoint.",
            ) from exc

        payload = parse_json_body(response)
        payload = payload if isinstance(payload, dict) else {}

        if response.is_error or not payload.get("access_token"):
            error_code = str(payload.get("error") or "")
            suberror = str(payload.get("suberror") or "")
            if error_code in INTERACTION_REQUIRED_ERRORS or suberror in INTERACTION_REQUIRED_ERRORS:
                self._log(
                    "silent_acquire_declined",
                    {"error": error_code, "suberror": suberror or None},
                )
                return None

            diagnostics = build_service_diagnostics(
                "entra", self.token_endpoint, response=response, payload=payload or None
            )
            detail = (
                diagnostics.error_message
                or diagnostics.error_code
                or f"HTTP {response.status_code}"
            )
            raise ServiceError(
                f"Failed to acquire Entra token: {detail}",
                diagnostics=diagnostics,
                hint=hint_for_status("entra", response.status_code),
            )

        access_token = payload["access_token"]
        # Entra rotates refresh tokens; keep the newest one.
        if payload.get("refresh_token"):
            self._refresh_token = payload["refresh_token"]
        expires_in = int(payload.get("expires_in") or 3600)
        self._cache[resource_uri] = _CachedToken(access_token, time.time() + expires_in)
        self._log(
            "silent_acquire_succeeded",
            {"expires_in": expires_in, "claims": get_safe_token_claims(access_token)},
        )
        return access_token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _log(self, operation: str, context_data: dict[str, Any]) -> None:
        logger.info(
            "Entra silent credential",
            extra={
                "component": "entra_auth",
                "operation": operation,
                "context_data": {"session_id": self.session_id, **context_data},
            },
        )
