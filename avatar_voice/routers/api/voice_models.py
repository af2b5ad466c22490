"""Pydantic DTOs for voice session endpoints and websocket events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class CreateVoiceSessionRequest(BaseModel):
    """Request payload for creating or resuming a voice session."""

    session_id: str | None = Field(
        default=None,
        description="Optional existing session ID for reconnect/resume.",
        max_length=128,
    )
    refresh_token: str | None = Field(
        default=None,
        description="Entra refresh token of the signed-in user, enables silent consent.",
        max_length=8_192,
    )


class CreateVoiceSessionResponse(BaseModel):
    """Session metadata required to open the websocket."""

    session_id: str
    websocket_path: str
    created: bool
    audio_format: str
    filler_enabled: bool
    silent_consent_enabled: bool


class VoiceHealthResponse(BaseModel):
    """Readiness of the voice pipeline dependencies."""

    ready: bool
    elevenlabs_configured: bool
    directline_configured: bool
    entra_configured: bool
    filler_enabled: bool
    tts_voice_id: str | None
    tts_model_id: str | None
    tts_output_format: str | None
    readiness_reasons: list[str]


class ConversationMessageResponse(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    text: str
    created_at: str


class VoiceSessionSnapshotResponse(BaseModel):
    """Observable conversation state for one session."""

    session_id: str
    status: Literal["idle", "listening", "thinking", "speaking", "error"]
    history: list[ConversationMessageResponse]
    signin_card: dict[str, Any] | None
    last_error: str | None
    is_processing: bool
    is_exchanging: bool


class VoiceClientTurnTextEvent(BaseModel):
    """Client event carrying one recognized utterance."""

    type: Literal["turn.text"]
    text: str = Field(max_length=4_000)


class VoiceClientSigninCompleteEvent(BaseModel):
    """Client event with the connection token from interactive sign-in."""

    type: Literal["signin.complete"]
    connection_token: str = Field(min_length=1)


class VoiceClientSigninAllowEvent(BaseModel):
    type: Literal["signin.allow"]


class VoiceClientSigninDismissEvent(BaseModel):
    type: Literal["signin.dismiss"]


class VoiceClientHistoryClearEvent(BaseModel):
    type: Literal["history.clear"]


class VoiceClientAvatarSpeakingEvent(BaseModel):
    """Client event reporting the avatar started or stopped speaking."""

    type: Literal["avatar.speaking"]
    speaking: bool


class VoiceClientSessionEndEvent(BaseModel):
    """Client event for intentional websocket session shutdown."""

    type: Literal["session.end"]


VoiceClientEvent = Annotated[
    VoiceClientTurnTextEvent
    | VoiceClientSigninCompleteEvent
    | VoiceClientSigninAllowEvent
    | VoiceClientSigninDismissEvent
    | VoiceClientHistoryClearEvent
    | VoiceClientAvatarSpeakingEvent
    | VoiceClientSessionEndEvent,
    Field(discriminator="type"),
]

VOICE_CLIENT_EVENT_ADAPTER = TypeAdapter(VoiceClientEvent)
