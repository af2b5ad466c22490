"""Avatar voice conversation endpoints."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from avatar_voice.core.errors import SigninCardNotPendingError
from avatar_voice.core.logging import get_logger
from avatar_voice.core.settings import get_settings
from avatar_voice.routers.api.voice_models import (
    VOICE_CLIENT_EVENT_ADAPTER,
    CreateVoiceSessionRequest,
    CreateVoiceSessionResponse,
    VoiceHealthResponse,
    VoiceSessionSnapshotResponse,
)
from avatar_voice.services.voice.elevenlabs_tts import build_voice_health_flags
from avatar_voice.services.voice.session_manager import (
    VoiceSessionState,
    create_voice_session,
    get_voice_session,
    prune_voice_sessions,
    touch_voice_session,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/voice", tags=["voice"])


async def _send_ws_event(
    websocket: WebSocket,
    send_lock: asyncio.Lock,
    payload: dict[str, Any],
) -> bool:
    """Send one websocket event payload safely."""

    try:
        async with send_lock:
            await websocket.send_json(payload)
        return True
    except Exception:
        return False


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and wait for shutdown."""

    if task is None:
        return
    if task.done():
        with suppress(asyncio.CancelledError, Exception):
            task.result()
        return
    task.cancel()
    with suppress(asyncio.CancelledError, Exception):
        await task


async def _close_expired_sessions() -> None:
    for expired in prune_voice_sessions():
        with suppress(Exception):
            await expired.aclose()


def _snapshot_response(state: VoiceSessionState) -> VoiceSessionSnapshotResponse:
    return VoiceSessionSnapshotResponse(
        session_id=state.session_id,
        **state.orchestrator.snapshot().to_dict(),
    )


@router.post("/sessions", response_model=CreateVoiceSessionResponse)
async def create_or_resume_voice_session(
    payload: CreateVoiceSessionRequest,
) -> CreateVoiceSessionResponse:
    """Create or resume a voice session."""

    await _close_expired_sessions()
    state, created = create_voice_session(
        payload.session_id,
        refresh_token=payload.refresh_token,
    )
    return CreateVoiceSessionResponse(
        session_id=state.session_id,
        websocket_path=f"/api/voice/ws/{state.session_id}",
        created=created,
        audio_format=state.playback.audio_format,
        filler_enabled=state.orchestrator.filler_enabled,
        silent_consent_enabled=state.credentials is not None,
    )


@router.get("/health", response_model=VoiceHealthResponse)
async def voice_health() -> VoiceHealthResponse:
    """Return dependency readiness for voice APIs."""

    return VoiceHealthResponse(**build_voice_health_flags())


@router.get("/sessions/{session_id}", response_model=VoiceSessionSnapshotResponse)
async def get_voice_session_snapshot(session_id: str) -> VoiceSessionSnapshotResponse:
    state = get_voice_session(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Voice session not found")
    return _snapshot_response(state)


@router.websocket("/ws/{session_id}")
async def voice_websocket(websocket: WebSocket, session_id: str) -> None:
    """Drive one session's conversation from client events."""

    state = get_voice_session(session_id)
    if state is None:
        await websocket.close(code=4404)
        return

    orchestrator = state.orchestrator
    voice_trace_logging = bool(get_settings().voice_trace_logging)

    def log_ws_trace(operation: str, context_data: dict[str, Any]) -> None:
        if not voice_trace_logging:
            return
        logger.info(
            "Voice websocket trace",
            extra={
                "component": "voice_ws",
                "operation": operation,
                "context_data": {"session_id": session_id, **context_data},
            },
        )

    await websocket.accept()
    logger.info(
        "Voice websocket connected",
        extra={
            "component": "voice_ws",
            "operation": "connect",
            "context_data": {"session_id": session_id, "status": orchestrator.status.value},
        },
    )
    send_lock = asyncio.Lock()

    async def emit(payload: dict[str, Any]) -> bool:
        return await _send_ws_event(websocket, send_lock, payload)

    async def emit_error(code: str, message: str, *, retryable: bool) -> bool:
        return await emit(
            {"type": "error", "code": code, "message": message, "retryable": retryable}
        )

    # Command name per running orchestrator task.
    command_tasks: dict[asyncio.Task[Any], str] = {}
    state.relay.attach(emit)
    receive_task: asyncio.Task[Any] = asyncio.create_task(websocket.receive_json())

    await emit(
        {
            "type": "session.ready",
            "session_id": session_id,
            "snapshot": orchestrator.snapshot().to_dict(),
        }
    )

    try:
        while True:
            wait_targets: set[asyncio.Task[Any]] = {receive_task, *command_tasks}
            done, _ = await asyncio.wait(wait_targets, return_when=asyncio.FIRST_COMPLETED)

            for task in [task for task in done if task in command_tasks]:
                command = command_tasks.pop(task)
                try:
                    task.result()
                    log_ws_trace("command_completed", {"command": command})
                except asyncio.CancelledError:
                    pass
                except SigninCardNotPendingError as exc:
                    if not await emit_error("no_pending_signin_card", str(exc), retryable=False):
                        return
                except Exception as exc:
                    logger.exception(
                        "Voice websocket command failed",
                        extra={
                            "component": "voice_ws",
                            "operation": command,
                            "context_data": {"session_id": session_id},
                        },
                    )
                    if not await emit_error("turn_failed", str(exc), retryable=True):
                        return

            if receive_task not in done:
                continue

            try:
                raw_payload = receive_task.result()
            except WebSocketDisconnect as exc:
                logger.info(
                    "Voice websocket disconnected by client",
                    extra={
                        "component": "voice_ws",
                        "operation": "disconnect",
                        "context_data": {
                            "session_id": session_id,
                            "code": getattr(exc, "code", None),
                        },
                    },
                )
                return
            except Exception:
                if not await emit_error(
                    "invalid_payload", "Expected JSON websocket message.", retryable=True
                ):
                    return
                receive_task = asyncio.create_task(websocket.receive_json())
                continue

            receive_task = asyncio.create_task(websocket.receive_json())
            touch_voice_session(session_id)
            try:
                event = VOICE_CLIENT_EVENT_ADAPTER.validate_python(raw_payload)
            except ValidationError as exc:
                message = exc.errors()[0]["msg"] if exc.errors() else "Invalid event."
                if not await emit_error("validation_error", message, retryable=True):
                    return
                continue

            event_type = event.type
            if event_type != "avatar.speaking":
                log_ws_trace("client_event", {"event_type": event_type})

            if event_type == "session.end":
                log_ws_trace("session_end_requested", {})
                await websocket.close(code=1000)
                return

            if event_type == "turn.text":
                task = asyncio.create_task(orchestrator.run_turn(event.text))
                command_tasks[task] = "run_turn"
            elif event_type == "signin.complete":
                task = asyncio.create_task(
                    orchestrator.complete_token_exchange(event.connection_token)
                )
                command_tasks[task] = "complete_token_exchange"
            elif event_type == "signin.allow":
                task = asyncio.create_task(orchestrator.submit_allow_action())
                command_tasks[task] = "submit_allow_action"
            elif event_type == "signin.dismiss":
                await orchestrator.dismiss_signin_card()
            elif event_type == "history.clear":
                await orchestrator.clear_history()
            elif event_type == "avatar.speaking":
                state.playback.set_speaking(event.speaking)
    finally:
        logger.info(
            "Voice websocket closing",
            extra={
                "component": "voice_ws",
                "operation": "close",
                "context_data": {"session_id": session_id},
            },
        )
        state.relay.detach(emit)
        # Cancel all before awaiting any; this coroutine may itself be cancelled.
        pending = [receive_task, *command_tasks]
        for task in pending:
            task.cancel()
        for task in pending:
            await _cancel_task(task)
