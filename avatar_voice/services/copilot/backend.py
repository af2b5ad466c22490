"""Per-session Copilot Studio adapter used by the turn orchestrator."""

from __future__ import annotations

import asyncio
from typing import Any

from avatar_voice.core.errors import ServiceDiagnostics, ServiceError
from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings
from avatar_voice.models.conversation import BackendReply
from avatar_voice.services.copilot.activities import classify_bot_response
from avatar_voice.services.copilot.directline import DirectLineClient, DirectLineConversation
from avatar_voice.services.copilot.reply_text import build_prompt, clean_bot_reply

logger = get_logger(__name__)

TOKEN_EXCHANGE_INVOKE_NAME = "signin/tokenExchange"


class CopilotBackend:
    """One Direct Line conversation with the agent.

    The conversation is started lazily on first use. Every response is
    returned as a ``BackendReply`` whose ``speech_text`` is the reply cleaned
    for text-to-speech.
    """

    def __init__(
        self,
        *,
        client: DirectLineClient | None = None,
        secret: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self._client = client or DirectLineClient()
        self._secret = secret if secret is not None else get_settings().directline_secret
        self._conversation: DirectLineConversation | None = None
        self._watermark: str | None = None
        self._start_lock = asyncio.Lock()

    @property
    def conversation_id(self) -> str | None:
        return self._conversation.conversation_id if self._conversation else None

    async def start(self) -> DirectLineConversation:
        """Open the conversation and drain the greeting so it is not read as a reply."""

        async with self._start_lock:
            if self._conversation is not None:
                return self._conversation
            if not self._secret:
                raise ServiceError(
                    "Copilot backend is not configured: set DIRECTLINE_SECRET",
                    diagnostics=ServiceDiagnostics(service="copilot"),
                )

            issued = await self._client.generate_token(self._secret)
            conversation = await self._client.start_conversation(issued.token)
            activities, watermark = await self._client.get_activities(
                token=conversation.token,
                conversation_id=conversation.conversation_id,
            )
            greeting = classify_bot_response(activities, self._client.user_id)
            self._conversation = conversation
            self._watermark = watermark
            logger.info(
                "Copilot conversation started",
                extra={
                    "component": "copilot_backend",
                    "operation": "start_conversation",
                    "context_data": {
                        "session_id": self.session_id,
                        "conversation_id": conversation.conversation_id,
                        "has_greeting": bool(greeting.bot_reply),
                    },
                },
            )
            return conversation

    async def send_message(self, text: str) -> BackendReply:
        return await self._exchange(
            {"type": "message", "text": build_prompt(text)},
            operation="send_message",
        )

    async def exchange_connection_token(
        self,
        *,
        connection_token: str,
        connection_name: str,
        token_exchange_resource_id: str,
    ) -> BackendReply:
        """Complete an OAuth card by handing the agent a connection-scoped token."""

        return await self._exchange(
            {
                "type": "invoke",
                "name": TOKEN_EXCHANGE_INVOKE_NAME,
                "value": {
                    "id": token_exchange_resource_id,
                    "connectionName": connection_name,
                    "token": connection_token,
                },
            },
            operation="token_exchange",
            require_reply=False,
        )

    async def submit_card_action(self, *, submit_action: dict[str, Any]) -> BackendReply:
        """Send an Adaptive Card ``Action.Submit`` payload, e.g. the "Allow" button."""

        return await self._exchange(
            {"type": "message", "text": "", "value": submit_action},
            operation="card_submit",
            require_reply=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _exchange(
        self,
        activity: dict[str, Any],
        *,
        operation: str,
        require_reply: bool = True,
    ) -> BackendReply:
        conversation = await self.start()
        classified, self._watermark = await self._client.exchange(
            token=conversation.token,
            conversation_id=conversation.conversation_id,
            activity=activity,
            watermark=self._watermark,
            require_reply=require_reply,
            poll_timeout_seconds=(
                None if require_reply else get_settings().directline_consent_poll_timeout_seconds
            ),
        )
        raw_reply = classified.bot_reply or ""
        logger.debug(
            "Copilot exchange completed",
            extra={
                "component": "copilot_backend",
                "operation": operation,
                "context_data": {
                    "session_id": self.session_id,
                    "reply_chars": len(raw_reply),
                    "has_signin_card": classified.signin_card is not None,
                },
            },
        )
        return BackendReply(
            bot_reply=raw_reply,
            speech_text=clean_bot_reply(raw_reply) if raw_reply else None,
            signin_card=classified.signin_card,
        )
