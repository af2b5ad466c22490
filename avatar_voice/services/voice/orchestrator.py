"""Turn orchestration for filler speech, agent replies and consent cards."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, Protocol

from avatar_voice.core.errors import SigninCardNotPendingError
from avatar_voice.core.logging import get_logger, truncate_for_trace
from avatar_voice.core.settings import get_settings
from avatar_voice.models.conversation import (
    BackendReply,
    ConversationMessage,
    ConversationRole,
    ConversationSnapshot,
    SigninCard,
    TurnStatus,
)

logger = get_logger(__name__)

EventEmitter = Callable[[dict[str, Any]], Awaitable[bool | None]]
SendBackendMessage = Callable[[str], Awaitable[BackendReply]]
SynthesizeSpeech = Callable[[str], Awaitable[str]]
PlayAudio = Callable[[str], Awaitable[None]]
InterruptPlayback = Callable[[], Awaitable[None]]
AcquireSilentCredential = Callable[[str], Awaitable[str | None]]
SubmitCardAction = Callable[..., Awaitable[BackendReply]]

FILLER_INPUT_PLACEHOLDER = "{{input}}"
MAX_FILLER_INPUT_CHARS = 80


class ExchangeConnectionToken(Protocol):
    def __call__(
        self,
        *,
        connection_token: str,
        connection_name: str,
        token_exchange_resource_id: str,
    ) -> Awaitable[BackendReply]: ...


def build_filler_text(template: str, user_text: str) -> str:
    """Render the filler phrase for one utterance."""

    if FILLER_INPUT_PLACEHOLDER not in template:
        return template
    if len(user_text) > MAX_FILLER_INPUT_CHARS:
        user_text = f"{user_text[:MAX_FILLER_INPUT_CHARS]}..."
    return template.replace(FILLER_INPUT_PLACEHOLDER, user_text)


class TurnOrchestrator:
    """Stateful conversation loop for one avatar session.

    Drives each user utterance through filler playback, the agent query, the
    optional silent consent exchange and reply speech. ``run_turn`` never
    overlaps itself: a call made while a turn is in flight returns without
    effect.
    """

    def __init__(
        self,
        *,
        send_backend_message: SendBackendMessage,
        synthesize_speech: SynthesizeSpeech,
        play_audio: PlayAudio,
        interrupt_playback: InterruptPlayback | None = None,
        acquire_silent_credential: AcquireSilentCredential | None = None,
        exchange_connection_token: ExchangeConnectionToken | None = None,
        submit_card_action: SubmitCardAction | None = None,
        filler_template: str | None = None,
        emit_event: EventEmitter | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self._send_backend_message = send_backend_message
        self._synthesize_speech = synthesize_speech
        self._play_audio = play_audio
        self._interrupt_playback = interrupt_playback
        self._acquire_silent_credential = acquire_silent_credential
        self._exchange_connection_token = exchange_connection_token
        self._submit_card_action = submit_card_action
        self._filler_template = (filler_template or "").strip()
        self._emit_event = emit_event

        self._history: list[ConversationMessage] = []
        self._status = TurnStatus.IDLE
        self._signin_card: SigninCard | None = None
        self._last_error: str | None = None
        self._is_processing = False
        self._is_exchanging = False

    @property
    def status(self) -> TurnStatus:
        return self._status

    @property
    def history(self) -> list[ConversationMessage]:
        return list(self._history)

    @property
    def signin_card(self) -> SigninCard | None:
        return self._signin_card

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def is_exchanging(self) -> bool:
        return self._is_exchanging

    @property
    def filler_enabled(self) -> bool:
        return bool(self._filler_template)

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            status=self._status,
            history=list(self._history),
            signin_card=self._signin_card,
            last_error=self._last_error,
            is_processing=self._is_processing,
            is_exchanging=self._is_exchanging,
        )

    async def run_turn(self, user_text: str) -> None:
        """Run one user utterance through to a spoken reply or a consent prompt.

        Raises:
            Exception: Whatever the backend, silent-auth or reply speech
                collaborators raised. Status is ``error`` by then and the
                orchestrator accepts the next turn.
        """

        clean_text = user_text.strip()
        if not clean_text or self._is_processing:
            return

        # Guard is taken before the first suspension point.
        self._is_processing = True
        filler_task: asyncio.Task[None] | None = None
        try:
            self._last_error = None
            await self._set_signin_card(None)
            await self._set_status(TurnStatus.SPEAKING)
            await self._append_message(ConversationRole.USER, clean_text)
            self._log_trace(
                "turn_started",
                {
                    "user_chars": len(clean_text),
                    "user_preview": truncate_for_trace(clean_text),
                    "filler_enabled": self.filler_enabled,
                },
            )

            if self.filler_enabled:
                filler_task = asyncio.create_task(self._speak_filler(clean_text))

            reply = await self._send_backend_message(clean_text)

            if self._interrupt_playback is not None:
                await self._interrupt_playback()
            if filler_task is not None:
                await filler_task

            await self._set_status(TurnStatus.THINKING)
            bot_reply = reply.bot_reply.strip()
            card = reply.signin_card
            self._log_trace(
                "backend_replied",
                {
                    "reply_chars": len(bot_reply),
                    "reply_preview": truncate_for_trace(bot_reply),
                    "has_signin_card": card is not None,
                },
            )

            if card is not None and card.token_exchange_resource_uri:
                exchanged = await self._try_silent_exchange(card)
                if exchanged is not None:
                    exchange_reply = exchanged.bot_reply.strip()
                    if exchange_reply:
                        await self.process_bot_reply(
                            exchange_reply, _strip_optional(exchanged.speech_text)
                        )
                    else:
                        await self._set_status(TurnStatus.LISTENING)
                    return

            if card is not None:
                await self._set_signin_card(card)

            if bot_reply:
                await self.process_bot_reply(bot_reply, _strip_optional(reply.speech_text))
            else:
                # Consent cards are displayed, never spoken.
                card_message = card.message.strip() if card is not None else ""
                if card_message:
                    await self._append_message(ConversationRole.ASSISTANT, card_message)
                await self._set_status(TurnStatus.LISTENING)
        except asyncio.CancelledError:
            self._log_trace("turn_cancelled", {})
            await self._stop_speech(filler_task)
            await self._set_status(TurnStatus.LISTENING)
            raise
        except Exception as exc:
            logger.exception(
                "Conversation turn failed",
                extra={
                    "component": "turn_orchestrator",
                    "operation": "run_turn",
                    "context_data": {"session_id": self.session_id},
                },
            )
            await self._stop_speech(filler_task)
            self._last_error = str(exc) or type(exc).__name__
            await self._set_status(TurnStatus.ERROR)
            raise
        finally:
            if filler_task is not None and not filler_task.done():
                filler_task.cancel()
                with suppress(asyncio.CancelledError):
                    await filler_task
            self._is_processing = False

    async def process_bot_reply(self, display_text: str, speech_text: str | None = None) -> None:
        """Show the reply, speak it through the avatar and return to listening.

        ``speech_text`` is already stripped of citations and markdown by the
        backend adapter; ``display_text`` is used for speech when it is empty.
        """

        await self._append_message(ConversationRole.ASSISTANT, display_text)
        await self._set_status(TurnStatus.SPEAKING)
        audio = await self._synthesize_speech(speech_text or display_text)
        # Resolves once the avatar accepted the audio, not when playback ends.
        await self._play_audio(audio)
        await self._set_status(TurnStatus.LISTENING)

    async def complete_token_exchange(self, connection_token: str) -> None:
        """Finish a consent card after the user completed interactive sign-in."""

        card = self._signin_card
        if (
            card is None
            or not card.supports_token_exchange
            or self._exchange_connection_token is None
        ):
            raise SigninCardNotPendingError(
                "No pending signin card with token exchange metadata"
            )

        exchange = self._exchange_connection_token
        await self._run_consent_action(
            "complete_token_exchange",
            lambda: exchange(
                connection_token=connection_token,
                connection_name=card.connection_name,
                token_exchange_resource_id=card.token_exchange_resource_id,
            ),
        )

    async def submit_allow_action(self) -> None:
        """Send the pending card's "Allow" submit data back to the agent."""

        card = self._signin_card
        if card is None or not card.submit_action or self._submit_card_action is None:
            raise SigninCardNotPendingError("No pending signin card with submit action data")

        submit = self._submit_card_action
        await self._run_consent_action(
            "submit_allow_action",
            lambda: submit(submit_action=dict(card.submit_action)),
        )

    async def dismiss_signin_card(self) -> None:
        await self._set_signin_card(None)
        await self._set_status(TurnStatus.LISTENING)

    async def clear_history(self) -> None:
        self._history.clear()
        await self._emit({"type": "history.cleared"})
        await self._set_signin_card(None)

    async def _run_consent_action(
        self,
        operation: str,
        request: Callable[[], Awaitable[BackendReply]],
    ) -> None:
        self._last_error = None
        self._is_exchanging = True
        await self._set_status(TurnStatus.THINKING)
        try:
            result = await request()
            await self._set_signin_card(None)

            bot_reply = result.bot_reply.strip()
            if bot_reply:
                await self.process_bot_reply(bot_reply, _strip_optional(result.speech_text))
            elif result.signin_card is not None:
                await self._set_signin_card(result.signin_card)
                await self._set_status(TurnStatus.LISTENING)
            else:
                await self._set_status(TurnStatus.LISTENING)
        except asyncio.CancelledError:
            self._log_trace("consent_action_cancelled", {"operation": operation})
            await self._set_status(TurnStatus.LISTENING)
            raise
        except Exception as exc:
            logger.exception(
                "Consent action failed",
                extra={
                    "component": "turn_orchestrator",
                    "operation": operation,
                    "context_data": {"session_id": self.session_id},
                },
            )
            self._last_error = str(exc) or type(exc).__name__
            await self._set_status(TurnStatus.ERROR)
        finally:
            self._is_exchanging = False

    async def _stop_speech(self, filler_task: asyncio.Task[None] | None) -> None:
        """Cancel a pending filler and silence whatever the avatar already accepted."""

        if filler_task is not None and not filler_task.done():
            filler_task.cancel()
            with suppress(asyncio.CancelledError):
                await filler_task
        if self._interrupt_playback is None:
            return
        try:
            await self._interrupt_playback()
        except Exception:
            logger.warning(
                "Failed to interrupt avatar playback",
                exc_info=True,
                extra={
                    "component": "turn_orchestrator",
                    "operation": "interrupt_playback",
                    "context_data": {"session_id": self.session_id},
                },
            )

    async def _try_silent_exchange(self, card: SigninCard) -> BackendReply | None:
        """Exchange a silently acquired credential; ``None`` means consent is needed."""

        if (
            not card.token_exchange_resource_uri
            or not card.supports_token_exchange
            or self._acquire_silent_credential is None
            or self._exchange_connection_token is None
        ):
            return None

        connection_token = await self._acquire_silent_credential(card.token_exchange_resource_uri)
        if not connection_token:
            self._log_trace(
                "silent_exchange_declined",
                {"connection_name": card.connection_name},
            )
            return None

        self._log_trace("silent_exchange_started", {"connection_name": card.connection_name})
        return await self._exchange_connection_token(
            connection_token=connection_token,
            connection_name=card.connection_name,
            token_exchange_resource_id=card.token_exchange_resource_id,
        )

    async def _speak_filler(self, user_text: str) -> None:
        filler_text = build_filler_text(self._filler_template, user_text)
        try:
            audio = await self._synthesize_speech(filler_text)
            await self._play_audio(audio)
        except Exception as exc:
            logger.warning(
                "Filler speech failed",
                extra={
                    "component": "turn_orchestrator",
                    "operation": "speak_filler",
                    "context_data": {"session_id": self.session_id, "error": str(exc)},
                },
            )

    async def _append_message(self, role: ConversationRole, text: str) -> None:
        message = ConversationMessage.create(role, text)
        self._history.append(message)
        await self._emit({"type": "history.appended", "message": message.to_dict()})

    async def _set_status(self, status: TurnStatus) -> None:
        if status == self._status:
            return
        self._status = status
        await self._emit(
            {"type": "status.changed", "status": status.value, "error": self._last_error}
        )

    async def _set_signin_card(self, card: SigninCard | None) -> None:
        if card is None and self._signin_card is None:
            return
        self._signin_card = card
        await self._emit(
            {"type": "signin_card.changed", "card": card.to_dict() if card else None}
        )

    async def _emit(self, payload: dict[str, Any]) -> None:
        if self._emit_event is None:
            return
        if self.session_id is not None:
            payload = {**payload, "session_id": self.session_id}
        await self._emit_event(payload)

    def _log_trace(self, operation: str, context_data: dict[str, Any]) -> None:
        if not get_settings().voice_trace_logging:
            return
        logger.info(
            "Conversation turn trace",
            extra={
                "component": "turn_orchestrator",
                "operation": operation,
                "context_data": {"session_id": self.session_id, **context_data},
            },
        )


def _strip_optional(text: str | None) -> str | None:
    if text is None:
        return None
    return text.strip() or None
