"""Tests for public voice API routes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from starlette.websockets import WebSocketDisconnect

from avatar_voice.models.conversation import BackendReply
from avatar_voice.services.voice import session_manager
from avatar_voice.services.voice.orchestrator import TurnOrchestrator
from avatar_voice.services.voice.playback import WebSocketAvatarPlayback
from avatar_voice.services.voice.session_manager import (
    SessionEventRelay,
    VoiceSessionState,
    clear_voice_sessions,
    get_voice_session,
)


@pytest.fixture(autouse=True)
def reset_voice_sessions() -> None:
    """Ensure voice session store is isolated per test."""

    clear_voice_sessions()
    yield
    clear_voice_sessions()


def _fake_session_builder(
    reply: BackendReply | None = None,
    *,
    backend_error: str | None = None,
    hang_backend: bool = False,
) -> Callable[..., VoiceSessionState]:
    def builder(session_id: str, *, refresh_token: str | None = None) -> VoiceSessionState:
        relay = SessionEventRelay(session_id)
        playback = WebSocketAvatarPlayback(relay, session_id=session_id)

        async def send_backend_message(_text: str) -> BackendReply:
            if backend_error is not None:
                raise RuntimeError(backend_error)
            if hang_backend:
                await asyncio.Event().wait()
            return reply or BackendReply(bot_reply="Hi there!")

        async def synthesize_speech(_text: str) -> str:
            return "YXVkaW8="

        orchestrator = TurnOrchestrator(
            send_backend_message=send_backend_message,
            synthesize_speech=synthesize_speech,
            play_audio=playback.play,
            interrupt_playback=playback.interrupt,
            emit_event=relay,
            session_id=session_id,
        )
        return VoiceSessionState(
            session_id=session_id,
            orchestrator=orchestrator,
            relay=relay,
            playback=playback,
        )

    return builder


def _receive_until(
    websocket: Any,
    predicate: Callable[[dict[str, Any]], bool],
    limit: int = 20,
) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for _ in range(limit):
        event = websocket.receive_json()
        events.append(event)
        if predicate(event):
            return events
    raise AssertionError(f"Expected event not received; got {events}")


def _create_session(client, **payload: Any) -> str:
    response = client.post("/api/voice/sessions", json=payload)
    assert response.status_code == 200
    return response.json()["session_id"]


def test_create_voice_session(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())

    response = client.post("/api/voice/sessions", json={})
    assert response.status_code == 200

    payload = response.json()
    assert payload["session_id"]
    assert payload["websocket_path"] == f"/api/voice/ws/{payload['session_id']}"
    assert payload["created"] is True
    assert payload["audio_format"] == "pcm_24000"
    assert payload["filler_enabled"] is False

    resumed = client.post("/api/voice/sessions", json={"session_id": payload["session_id"]})
    assert resumed.json()["created"] is False


def test_create_voice_session_enables_silent_consent_with_refresh_token(client) -> None:
    response = client.post("/api/voice/sessions", json={"refresh_token": "refresh-1"})

    assert response.status_code == 200
    assert response.json()["silent_consent_enabled"] is True


def test_create_voice_session_rejects_long_session_id(client) -> None:
    response = client.post("/api/voice/sessions", json={"session_id": "x" * 200})

    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"] == ["body", "session_id"]


def test_voice_health_returns_flags(client, monkeypatch) -> None:
    """Voice health endpoint should return provider capability flags."""

    monkeypatch.setattr(
        "avatar_voice.routers.api.voice.build_voice_health_flags",
        lambda: {
            "ready": True,
            "elevenlabs_configured": True,
            "directline_configured": True,
            "entra_configured": False,
            "filler_enabled": False,
            "tts_voice_id": "voice_123",
            "tts_model_id": "eleven_flash_v2_5",
            "tts_output_format": "pcm_24000",
            "readiness_reasons": [],
        },
    )

    response = client.get("/api/voice/health")
    assert response.status_code == 200
    assert response.json()["ready"] is True


def test_voice_websocket_rejects_unknown_session(client) -> None:
    with pytest.raises(WebSocketDisconnect), client.websocket_connect("/api/voice/ws/missing"):
        pass


def test_voice_websocket_runs_turn_and_streams_events(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        ready = websocket.receive_json()
        assert ready["type"] == "session.ready"
        assert ready["snapshot"]["status"] == "idle"

        websocket.send_json({"type": "turn.text", "text": "hello"})
        events = _receive_until(
            websocket,
            lambda event: event.get("type") == "status.changed"
            and event.get("status") == "listening",
        )

    assert [event["type"] for event in events] == [
        "status.changed",
        "history.appended",
        "avatar.interrupt",
        "status.changed",
        "history.appended",
        "status.changed",
        "avatar.speak",
        "status.changed",
    ]
    assert events[1]["message"]["text"] == "hello"
    assert events[4]["message"]["role"] == "assistant"
    assert events[6]["audio_b64"] == "YXVkaW8="
    assert all(event["session_id"] == session_id for event in events)

    snapshot = client.get(f"/api/voice/sessions/{session_id}").json()
    assert snapshot["status"] == "listening"
    assert [entry["text"] for entry in snapshot["history"]] == ["hello", "Hi there!"]


def test_voice_websocket_reports_turn_failures(client, monkeypatch) -> None:
    monkeypatch.setattr(
        session_manager,
        "build_voice_session_state",
        _fake_session_builder(backend_error="Copilot unavailable"),
    )
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "turn.text", "text": "hello"})
        events = _receive_until(websocket, lambda event: event.get("type") == "error")

    assert events[-2] == {
        "type": "status.changed",
        "status": "error",
        "error": "Copilot unavailable",
        "session_id": session_id,
    }
    assert events[-1]["code"] == "turn_failed"
    assert events[-1]["message"] == "Copilot unavailable"
    assert events[-1]["retryable"] is True


def test_voice_websocket_disconnect_mid_turn_returns_session_to_listening(
    client, monkeypatch
) -> None:
    monkeypatch.setattr(
        session_manager,
        "build_voice_session_state",
        _fake_session_builder(hang_backend=True),
    )
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "turn.text", "text": "hello"})
        _receive_until(websocket, lambda event: event.get("type") == "history.appended")

    for _ in range(20):
        snapshot = client.get(f"/api/voice/sessions/{session_id}").json()
        if not snapshot["is_processing"]:
            break

    assert snapshot["status"] == "listening"
    assert snapshot["is_processing"] is False
    assert [entry["text"] for entry in snapshot["history"]] == ["hello"]

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        ready = websocket.receive_json()

    assert ready["snapshot"]["status"] == "listening"


def test_voice_websocket_rejects_consent_without_pending_card(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "signin.allow"})
        error = websocket.receive_json()

    assert error["type"] == "error"
    assert error["code"] == "no_pending_signin_card"
    assert error["retryable"] is False


def test_voice_websocket_shows_pending_card_and_dismisses_it(client, monkeypatch) -> None:
    from avatar_voice.models.conversation import SigninCard

    card = SigninCard(
        title="Permission required",
        message="Allow access to Outlook?",
        submit_action={"action": "Allow"},
    )
    monkeypatch.setattr(
        session_manager,
        "build_voice_session_state",
        _fake_session_builder(BackendReply(bot_reply="", signin_card=card)),
    )
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "turn.text", "text": "read my mail"})
        events = _receive_until(websocket, lambda event: event.get("type") == "signin_card.changed")
        assert events[-1]["card"]["message"] == "Allow access to Outlook?"

        websocket.send_json({"type": "signin.dismiss"})
        dismissed = _receive_until(
            websocket,
            lambda event: event.get("type") == "signin_card.changed" and event["card"] is None,
        )

    assert dismissed[-1]["card"] is None
    assert get_voice_session(session_id).orchestrator.signin_card is None


def test_voice_websocket_validates_client_events(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()

        websocket.send_json({"type": "audio.frame"})
        assert websocket.receive_json()["code"] == "validation_error"

        websocket.send_text("not json")
        assert websocket.receive_json()["code"] == "invalid_payload"


def test_voice_websocket_tracks_avatar_speaking_and_clears_history(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "avatar.speaking", "speaking": True})
        websocket.send_json({"type": "history.clear"})
        cleared = websocket.receive_json()

    assert cleared == {"type": "history.cleared", "session_id": session_id}
    assert get_voice_session(session_id).playback.is_speaking is True


def test_voice_websocket_session_end_closes_socket(client, monkeypatch) -> None:
    monkeypatch.setattr(session_manager, "build_voice_session_state", _fake_session_builder())
    session_id = _create_session(client)

    with client.websocket_connect(f"/api/voice/ws/{session_id}") as websocket:
        websocket.receive_json()
        websocket.send_json({"type": "session.end"})
        with pytest.raises(WebSocketDisconnect):
            websocket.receive_json()

    assert get_voice_session(session_id).relay.attached is False


def test_get_voice_session_snapshot_returns_404_for_unknown_session(client) -> None:
    response = client.get("/api/voice/sessions/missing")

    assert response.status_code == 404
