"""Avatar playback relayed to the browser that renders the avatar."""

from __future__ import annotations

from typing import Any

from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings
from avatar_voice.services.voice.orchestrator import EventEmitter

logger = get_logger(__name__)


class WebSocketAvatarPlayback:
    """Send synthesized audio to the connected client.

    ``play`` resolves once the ``avatar.speak`` event has been handed to the
    websocket; the avatar reports its own speaking state back through
    ``set_speaking`` and the orchestrator never waits on it.
    """

    def __init__(
        self,
        emit_event: EventEmitter,
        *,
        audio_format: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self._emit_event = emit_event
        self.audio_format = audio_format or get_settings().elevenlabs_output_format
        self.session_id = session_id
        self._seq = 0
        self._is_speaking = False

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    def set_speaking(self, speaking: bool) -> None:
        self._is_speaking = speaking

    async def play(self, audio_b64: str) -> None:
        self._seq += 1
        delivered = await self._send(
            {
                "type": "avatar.speak",
                "seq": self._seq,
                "audio_b64": audio_b64,
                "format": self.audio_format,
            }
        )
        if not delivered:
            logger.warning(
                "Avatar audio dropped; no client connected",
                extra={
                    "component": "avatar_playback",
                    "operation": "play",
                    "context_data": {"session_id": self.session_id, "seq": self._seq},
                },
            )

    async def interrupt(self) -> None:
        self._is_speaking = False
        await self._send({"type": "avatar.interrupt", "seq": self._seq})

    async def _send(self, payload: dict[str, Any]) -> bool:
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        return bool(await self._emit_event(payload))
