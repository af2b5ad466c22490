"""Async Direct Line 3.0 client for talking to a Copilot Studio agent."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from avatar_voice.core.errors import ServiceError
from avatar_voice.core.logging import get_logger, truncate_for_trace
from avatar_voice.core.settings import get_settings
from avatar_voice.models.conversation import BackendReply
from avatar_voice.services.copilot.activities import Activity, classify_bot_response
from avatar_voice.services.diagnostics import (
    build_service_diagnostics,
    hint_for_status,
    parse_json_body,
)

logger = get_logger(__name__)


@dataclass
class DirectLineConversation:
    conversation_id: str
    token: str
    stream_url: str | None = None
    expires_in: int | None = None


class DirectLineClient:
    """Thin wrapper over the Direct Line REST API.

    The caller owns the conversation id and watermark; each ``exchange``
    posts one activity and polls until the agent finished answering it.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        user_id: str | None = None,
        poll_timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.directline_base_url).rstrip("/")
        self.user_id = user_id or settings.directline_user_id
        self.poll_timeout_seconds = (
            poll_timeout_seconds
            if poll_timeout_seconds is not None
            else settings.directline_poll_timeout_seconds
        )
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.directline_poll_interval_seconds
        )
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=settings.http_timeout_seconds, connect=10.0)
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def generate_token(self, secret: str) -> DirectLineConversation:
        """Exchange the Direct Line secret for a conversation-scoped token."""

        payload = await self._request("POST", "/tokens/generate", bearer=secret, json={})
        token = payload.get("token")
        if not token:
            raise self._error(
                "Direct Line token response did not include a token", "/tokens/generate"
            )
        return DirectLineConversation(
            conversation_id=payload.get("conversationId") or "",
            token=token,
            expires_in=payload.get("expires_in"),
        )

    async def start_conversation(self, token: str) -> DirectLineConversation:
        payload = await self._request("POST", "/conversations", bearer=token, json={})
        conversation_id = payload.get("conversationId")
        if not conversation_id:
            raise self._error("Direct Line did not return a conversationId", "/conversations")
        return DirectLineConversation(
            conversation_id=conversation_id,
            token=payload.get("token") or token,
            stream_url=payload.get("streamUrl"),
            expires_in=payload.get("expires_in"),
        )

    async def post_activity(
        self,
        *,
        token: str,
        conversation_id: str,
        activity: dict[str, Any],
    ) -> str | None:
        body = {"from": {"id": self.user_id}, **activity}
        payload = await self._request(
            "POST",
            f"/conversations/{conversation_id}/activities",
            bearer=token,
            json=body,
        )
        return payload.get("id")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def get_activities(
        self,
        *,
        token: str,
        conversation_id: str,
        watermark: str | None = None,
    ) -> tuple[list[Activity], str | None]:
        params = {"watermark": watermark} if watermark else None
        payload = await self._request(
            "GET",
            f"/conversations/{conversation_id}/activities",
            bearer=token,
            params=params,
        )
        return list(payload.get("activities") or []), payload.get("watermark") or watermark

    async def exchange(
        self,
        *,
        token: str,
        conversation_id: str,
        activity: dict[str, Any],
        watermark: str | None = None,
        require_reply: bool = True,
        poll_timeout_seconds: float | None = None,
    ) -> tuple[BackendReply, str | None]:
        """Post one activity and wait for the agent's classified response.

        Polling ends once a bot message or sign-in card has arrived and a later
        poll returns nothing new, so a streamed answer is never split across
        two exchanges. Streamed ``typing`` text is used only when the deadline
        passes without a message, and only if it replies to the posted activity.

        Args:
            require_reply: When False an empty classification is returned at the
                deadline instead of raising. Invokes and card submits may be
                acknowledged without any bot message.
            poll_timeout_seconds: Overrides the client's poll deadline.

        Returns:
            The classified reply and the watermark to use for the next exchange.

        Raises:
            ServiceError: On HTTP failures or when ``require_reply`` is set and
                no reply arrives before the poll deadline.
        """

        activity_id = await self.post_activity(
            token=token, conversation_id=conversation_id, activity=activity
        )

        timeout = (
            poll_timeout_seconds if poll_timeout_seconds is not None else self.poll_timeout_seconds
        )
        collected: list[Activity] = []
        answered = False
        deadline = time.monotonic() + timeout
        while True:
            activities, watermark = await self.get_activities(
                token=token,
                conversation_id=conversation_id,
                watermark=watermark,
            )
            if answered and not activities:
                break
            collected.extend(activities)
            reply = classify_bot_response(collected, self.user_id, include_typing=False)
            answered = bool(reply.bot_reply or reply.signin_card is not None)
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.poll_interval_seconds)

        if not answered:
            reply = classify_bot_response(
                [item for item in collected if _answers_activity(item, activity_id)],
                self.user_id,
            )
        if reply.bot_reply or reply.signin_card is not None or not require_reply:
            self._log_debug(collected, reply)
            return reply, watermark

        error = self._error(
            "Timed out waiting for Copilot bot reply",
            f"/conversations/{conversation_id}/activities",
        )
        error.diagnostics.status = 504
        raise error

    async def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        response = await self._client.request(
            method,
            url,
            json=json,
            params=params,
            headers={"Authorization": f"Bearer {bearer}"},
        )
        if response.is_error:
            diagnostics = build_service_diagnostics("copilot", url, response=response)
            detail = (
                diagnostics.error_message
                or diagnostics.error_code
                or f"HTTP {response.status_code}"
            )
            raise ServiceError(
                f"Direct Line {method} {path} failed: {detail}",
                diagnostics=diagnostics,
                hint=hint_for_status("copilot", response.status_code),
            )
        payload = parse_json_body(response)
        return payload if isinstance(payload, dict) else {}

    def _error(self, message: str, path: str) -> ServiceError:
        return ServiceError(
            message,
            diagnostics=build_service_diagnostics("copilot", f"{self.base_url}{path}"),
        )

    def _log_debug(self, activities: list[Activity], reply: BackendReply) -> None:
        if not get_settings().copilot_debug:
            return
        logger.info(
            "Copilot activities classified",
            extra={
                "component": "copilot_directline",
                "operation": "classify",
                "context_data": {
                    "activity_count": len(activities),
                    "activity_types": [activity.get("type") for activity in activities],
                    "reply_preview": truncate_for_trace(reply.bot_reply),
                    "has_signin_card": reply.signin_card is not None,
                    "signin_connection": (
                        reply.signin_card.connection_name if reply.signin_card else None
                    ),
                },
            },
        )


def _answers_activity(activity: Activity, activity_id: str | None) -> bool:
    if activity.get("type") != "typing":
        return True
    return activity_id is not None and activity.get("replyToId") == activity_id
