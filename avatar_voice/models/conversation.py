"""Conversation domain types shared by the orchestrator and its adapters."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


class TurnStatus(StrEnum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    ERROR = "error"


class ConversationRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationMessage:
    """One immutable transcript entry."""

    id: str
    role: ConversationRole
    text: str
    created_at: datetime

    @classmethod
    def create(cls, role: ConversationRole, text: str) -> ConversationMessage:
        return cls(
            id=f"{role.value}-{uuid4().hex}",
            role=role,
            text=text,
            created_at=datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SigninCard:
    """Consent prompt surfaced by the agent before a data-connected query can run.

    ``token_exchange_resource_uri`` is the scope to request silently,
    ``token_exchange_resource_id`` and ``connection_name`` are echoed back in the
    token exchange, and ``submit_action`` holds the data of an Adaptive Card
    "Allow" button when the card uses ``Action.Submit`` instead of OAuth.
    """

    title: str
    message: str
    token_exchange_resource_uri: str | None = None
    token_exchange_resource_id: str | None = None
    connection_name: str | None = None
    submit_action: dict[str, Any] | None = None

    @property
    def supports_token_exchange(self) -> bool:
        return bool(self.token_exchange_resource_id and self.connection_name)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BackendReply:
    """Classified agent response for one request."""

    bot_reply: str = ""
    speech_text: str | None = None
    signin_card: SigninCard | None = None


@dataclass
class ConversationSnapshot:
    """Point-in-time view of an orchestrator's observable state."""

    status: TurnStatus
    history: list[ConversationMessage] = field(default_factory=list)
    signin_card: SigninCard | None = None
    last_error: str | None = None
    is_processing: bool = False
    is_exchanging: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "history": [message.to_dict() for message in self.history],
            "signin_card": self.signin_card.to_dict() if self.signin_card else None,
            "last_error": self.last_error,
            "is_processing": self.is_processing,
            "is_exchanging": self.is_exchanging,
        }
