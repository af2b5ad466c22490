"""Tests for ElevenLabs speech synthesis helpers."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from avatar_voice.core.errors import SpeechSynthesisError
from avatar_voice.core.settings import get_settings
from avatar_voice.services.voice import elevenlabs_tts as tts


def _install_fake_client(monkeypatch, response=None, error: Exception | None = None):
    captured: dict[str, object] = {}

    class FakeTextToSpeech:
        def convert_with_timestamps(self, **kwargs):
            captured.update(kwargs)
            if error is not None:
                raise error
            return response

    class FakeElevenLabs:
        def __init__(self, api_key: str | None) -> None:
            captured["api_key"] = api_key
            self.text_to_speech = FakeTextToSpeech()

    monkeypatch.setattr(tts, "ElevenLabs", FakeElevenLabs)
    return captured


@pytest.mark.asyncio
async def test_synthesize_returns_base64_audio(monkeypatch) -> None:
    captured = _install_fake_client(monkeypatch, SimpleNamespace(audio_base_64="UENNREFUQQ=="))
    synthesizer = tts.ElevenLabsSpeechSynthesizer(api_key="el-key", voice_id="voice-1")

    audio = await synthesizer.synthesize("  Hello there.  ")

    assert audio == "UENNREFUQQ=="
    assert captured == {
        "api_key": "el-key",
        "voice_id": "voice-1",
        "text": "Hello there.",
        "model_id": "eleven_flash_v2_5",
        "output_format": "pcm_24000",
    }


@pytest.mark.asyncio
async def test_synthesize_rejects_empty_text(monkeypatch) -> None:
    _install_fake_client(monkeypatch, SimpleNamespace(audio_base_64="x"))
    synthesizer = tts.ElevenLabsSpeechSynthesizer(api_key="el-key", voice_id="voice-1")

    with pytest.raises(SpeechSynthesisError, match="text is required") as exc_info:
        await synthesizer.synthesize("   ")

    assert exc_info.value.status == 400


@pytest.mark.asyncio
async def test_synthesize_requires_configuration() -> None:
    synthesizer = tts.ElevenLabsSpeechSynthesizer()

    with pytest.raises(SpeechSynthesisError, match="ELEVENLABS_API_KEY"):
        await synthesizer.synthesize("hello")


@pytest.mark.asyncio
async def test_synthesize_wraps_sdk_errors(monkeypatch) -> None:
    class QuotaExceeded(Exception):
        status_code = 429

    _install_fake_client(monkeypatch, error=QuotaExceeded("quota exceeded"))
    synthesizer = tts.ElevenLabsSpeechSynthesizer(api_key="el-key", voice_id="voice-1")

    with pytest.raises(SpeechSynthesisError, match="quota exceeded") as exc_info:
        await synthesizer.synthesize("hello")

    assert exc_info.value.status == 429
    assert exc_info.value.diagnostics.service == "elevenlabs"


@pytest.mark.asyncio
async def test_synthesize_requires_audio_in_response(monkeypatch) -> None:
    _install_fake_client(monkeypatch, SimpleNamespace(audio_base_64=""))
    synthesizer = tts.ElevenLabsSpeechSynthesizer(api_key="el-key", voice_id="voice-1")

    with pytest.raises(SpeechSynthesisError, match="missing audio_base_64"):
        await synthesizer.synthesize("hello")


def test_build_voice_health_flags_reports_missing_configuration() -> None:
    flags = tts.build_voice_health_flags()

    assert flags["ready"] is False
    assert flags["readiness_reasons"] == [
        "missing_elevenlabs_api_key",
        "missing_elevenlabs_voice_id",
        "missing_directline_secret",
    ]
    assert flags["filler_enabled"] is False


def test_build_voice_health_flags_ready_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("ELEVENLABS_API_KEY", "el-key")
    monkeypatch.setenv("ELEVENLABS_VOICE_ID", "voice-1")
    monkeypatch.setenv("DIRECTLINE_SECRET", "dl-secret")
    monkeypatch.setenv("FILLER_TEXT_TEMPLATE", "Let me check {{input}}")
    get_settings.cache_clear()

    flags = tts.build_voice_health_flags()

    assert flags["ready"] is True
    assert flags["readiness_reasons"] == []
    assert flags["elevenlabs_configured"] is True
    assert flags["directline_configured"] is True
    assert flags["entra_configured"] is False
    assert flags["filler_enabled"] is True
    assert flags["tts_voice_id"] == "voice-1"
