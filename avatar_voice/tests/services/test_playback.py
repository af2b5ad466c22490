"""Tests for websocket avatar playback."""

from __future__ import annotations

from typing import Any

import pytest

from avatar_voice.services.voice.playback import WebSocketAvatarPlayback


class RecordingEmitter:
    def __init__(self, delivered: bool = True) -> None:
        self.delivered = delivered
        self.events: list[dict[str, Any]] = []

    async def __call__(self, payload: dict[str, Any]) -> bool:
        self.events.append(payload)
        return self.delivered


@pytest.mark.asyncio
async def test_play_emits_sequenced_speak_events() -> None:
    emitter = RecordingEmitter()
    playback = WebSocketAvatarPlayback(emitter, audio_format="pcm_16000", session_id="s1")

    await playback.play("Zmlyc3Q=")
    await playback.play("c2Vjb25k")

    assert emitter.events == [
        {
            "type": "avatar.speak",
            "seq": 1,
            "audio_b64": "Zmlyc3Q=",
            "format": "pcm_16000",
            "session_id": "s1",
        },
        {
            "type": "avatar.speak",
            "seq": 2,
            "audio_b64": "c2Vjb25k",
            "format": "pcm_16000",
            "session_id": "s1",
        },
    ]


@pytest.mark.asyncio
async def test_play_without_client_does_not_raise() -> None:
    emitter = RecordingEmitter(delivered=False)
    playback = WebSocketAvatarPlayback(emitter)

    await playback.play("YXVkaW8=")

    assert emitter.events[0]["format"] == "pcm_24000"
    assert "session_id" not in emitter.events[0]


@pytest.mark.asyncio
async def test_interrupt_emits_event_and_resets_speaking_flag() -> None:
    emitter = RecordingEmitter()
    playback = WebSocketAvatarPlayback(emitter, session_id="s1")
    await playback.play("YXVkaW8=")
    playback.set_speaking(True)

    await playback.interrupt()

    assert playback.is_speaking is False
    assert emitter.events[-1] == {"type": "avatar.interrupt", "seq": 1, "session_id": "s1"}
