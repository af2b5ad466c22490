"""In-memory session manager for avatar voice conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any
from uuid import uuid4

from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings
from avatar_voice.services.auth.entra import EntraSilentCredentialProvider
from avatar_voice.services.copilot.backend import CopilotBackend
from avatar_voice.services.voice.elevenlabs_tts import ElevenLabsSpeechSynthesizer
from avatar_voice.services.voice.orchestrator import EventEmitter, TurnOrchestrator
from avatar_voice.services.voice.playback import WebSocketAvatarPlayback

logger = get_logger(__name__)


class SessionEventRelay:
    """Forward orchestrator events to whichever websocket is attached.

    A session outlives its websocket connections; events emitted while no
    client is attached are dropped and reported as undelivered.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._sink: EventEmitter | None = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    def attach(self, sink: EventEmitter) -> None:
        self._sink = sink

    def detach(self, sink: EventEmitter) -> None:
        if self._sink is sink:
            self._sink = None

    async def __call__(self, payload: dict[str, Any]) -> bool:
        sink = self._sink
        if sink is None:
            return False
        return bool(await sink(payload))


@dataclass
class VoiceSessionState:
    """State for one avatar voice session."""

    session_id: str
    orchestrator: TurnOrchestrator
    relay: SessionEventRelay
    playback: WebSocketAvatarPlayback
    backend: CopilotBackend | None = None
    credentials: EntraSilentCredentialProvider | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    async def aclose(self) -> None:
        if self.backend is not None:
            await self.backend.aclose()
        if self.credentials is not None:
            await self.credentials.aclose()


def build_voice_session_state(
    session_id: str,
    *,
    refresh_token: str | None = None,
) -> VoiceSessionState:
    """Wire one orchestrator to Copilot, ElevenLabs, Entra and the avatar relay."""

    settings = get_settings()
    relay = SessionEventRelay(session_id)
    playback = WebSocketAvatarPlayback(relay, session_id=session_id)
    synthesizer = ElevenLabsSpeechSynthesizer()
    backend = CopilotBackend(session_id=session_id)
    credentials = (
        EntraSilentCredentialProvider(refresh_token=refresh_token, session_id=session_id)
        if refresh_token
        else None
    )
    orchestrator = TurnOrchestrator(
        send_backend_message=backend.send_message,
        synthesize_speech=synthesizer.synthesize,
        play_audio=playback.play,
        interrupt_playback=playback.interrupt,
        acquire_silent_credential=credentials.acquire if credentials is not None else None,
        exchange_connection_token=backend.exchange_connection_token,
        submit_card_action=backend.submit_card_action,
        filler_template=settings.filler_text_template,
        emit_event=relay,
        session_id=session_id,
    )
    return VoiceSessionState(
        session_id=session_id,
        orchestrator=orchestrator,
        relay=relay,
        playback=playback,
        backend=backend,
        credentials=credentials,
    )


_VOICE_SESSION_STORE: dict[str, VoiceSessionState] = {}
_VOICE_SESSION_LOCK = Lock()


def create_voice_session(
    session_id: str | None = None,
    *,
    refresh_token: str | None = None,
) -> tuple[VoiceSessionState, bool]:
    """Create a new voice session or return the existing one.

    Args:
        session_id: Optional existing session identifier.
        refresh_token: Entra refresh token enabling silent consent; only used
            when the session is created.

    Returns:
        The session state and whether it was newly created.
    """

    normalized_session_id = (session_id or "").strip() or str(uuid4())
    now = datetime.now(UTC)

    with _VOICE_SESSION_LOCK:
        existing = _VOICE_SESSION_STORE.get(normalized_session_id)
        if existing is not None:
            existing.updated_at = now
            return existing, False

        state = build_voice_session_state(normalized_session_id, refresh_token=refresh_token)
        state.created_at = now
        state.updated_at = now
        _VOICE_SESSION_STORE[normalized_session_id] = state

    logger.info(
        "Voice session created",
        extra={
            "component": "voice_sessions",
            "operation": "create_session",
            "context_data": {
                "session_id": normalized_session_id,
                "silent_consent": state.credentials is not None,
            },
        },
    )
    return state, True


def get_voice_session(session_id: str) -> VoiceSessionState | None:
    with _VOICE_SESSION_LOCK:
        state = _VOICE_SESSION_STORE.get(session_id)
        if state is None:
            return None
        state.updated_at = datetime.now(UTC)
        return state


def touch_voice_session(session_id: str) -> None:
    """Mark a session active so long-lived websockets are not pruned."""

    with _VOICE_SESSION_LOCK:
        state = _VOICE_SESSION_STORE.get(session_id)
        if state is not None:
            state.updated_at = datetime.now(UTC)


def prune_voice_sessions(ttl_minutes: int | None = None) -> list[VoiceSessionState]:
    """Remove expired voice sessions from memory.

    Args:
        ttl_minutes: Optional override for tests.

    Returns:
        The removed sessions; the caller closes their network clients.
    """

    settings = get_settings()
    configured_ttl = ttl_minutes if ttl_minutes is not None else settings.voice_session_ttl_minutes
    effective_ttl = max(1, int(configured_ttl))
    cutoff = datetime.now(UTC) - timedelta(minutes=effective_ttl)

    with _VOICE_SESSION_LOCK:
        expired = [
            session_id
            for session_id, state in _VOICE_SESSION_STORE.items()
            if state.updated_at < cutoff
        ]
        return [_VOICE_SESSION_STORE.pop(session_id) for session_id in expired]


def clear_voice_sessions() -> None:
    """Clear all in-memory voice sessions (test helper)."""

    with _VOICE_SESSION_LOCK:
        _VOICE_SESSION_STORE.clear()
