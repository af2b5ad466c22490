"""ElevenLabs text-to-speech for avatar replies and filler phrases."""

from __future__ import annotations

import asyncio
from typing import Any

from elevenlabs.client import ElevenLabs

from avatar_voice.core.errors import SpeechSynthesisError
from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings

logger = get_logger(__name__)


def build_voice_health_flags() -> dict[str, Any]:
    """Build readiness flags for the voice endpoints."""

    settings = get_settings()
    elevenlabs_configured = bool(settings.elevenlabs_api_key and settings.elevenlabs_voice_id)
    directline_configured = bool(settings.directline_secret)
    entra_configured = bool(settings.entra_tenant_id and settings.entra_client_id)

    readiness_reasons: list[str] = []
    if not settings.elevenlabs_api_key:
        readiness_reasons.append("missing_elevenlabs_api_key")
    if not settings.elevenlabs_voice_id:
        readiness_reasons.append("missing_elevenlabs_voice_id")
    if not directline_configured:
        readiness_reasons.append("missing_directline_secret")

    return {
        "elevenlabs_configured": elevenlabs_configured,
        "directline_configured": directline_configured,
        "entra_configured": entra_configured,
        "filler_enabled": bool(settings.filler_text_template),
        "tts_voice_id": settings.elevenlabs_voice_id,
        "tts_model_id": settings.elevenlabs_model_id,
        "tts_output_format": settings.elevenlabs_output_format,
        "ready": len(readiness_reasons) == 0,
        "readiness_reasons": readiness_reasons,
    }


class ElevenLabsSpeechSynthesizer:
    """Synthesize complete utterances to base64 PCM.

    The blocking SDK call runs in a worker thread so playback and the agent
    query keep moving on the event loop.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        voice_id: str | None = None,
        model_id: str | None = None,
        output_format: str | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.elevenlabs_api_key
        self.voice_id = voice_id or settings.elevenlabs_voice_id
        self.model_id = model_id or settings.elevenlabs_model_id
        self.output_format = output_format or settings.elevenlabs_output_format
        self._client: ElevenLabs | None = None

    def _ensure_ready(self) -> ElevenLabs:
        if not self.api_key or not self.voice_id:
            raise SpeechSynthesisError("Missing ELEVENLABS_API_KEY or ELEVENLABS_VOICE_ID")
        if self._client is None:
            self._client = ElevenLabs(api_key=self.api_key)
        return self._client

    async def synthesize(self, text: str) -> str:
        """Return base64-encoded audio for ``text``.

        Raises:
            SpeechSynthesisError: On empty text, missing configuration, SDK
                failures or a response without audio.
        """

        normalized = text.strip()
        if not normalized:
            raise SpeechSynthesisError("text is required", status=400)
        client = self._ensure_ready()

        def _convert() -> Any:
            return client.text_to_speech.convert_with_timestamps(
                voice_id=self.voice_id,
                text=normalized,
                model_id=self.model_id,
                output_format=self.output_format,
            )

        try:
            response = await asyncio.to_thread(_convert)
        except Exception as exc:
            logger.error(
                "ElevenLabs synthesis failed",
                extra={
                    "component": "voice_tts",
                    "operation": "synthesize",
                    "context_data": {"text_chars": len(normalized), "error": str(exc)},
                },
            )
            raise SpeechSynthesisError(
                f"Failed to synthesize speech with ElevenLabs: {exc}",
                status=getattr(exc, "status_code", None),
            ) from exc

        audio = getattr(response, "audio_base_64", None)
        if not audio:
            raise SpeechSynthesisError("ElevenLabs response missing audio_base_64")
        return audio
