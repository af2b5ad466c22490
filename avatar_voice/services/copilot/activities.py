"""Classify Bot Framework activities into a speakable reply and/or a consent card."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from avatar_voice.models.conversation import BackendReply, SigninCard

Activity = dict[str, Any]

OAUTH_CARD_CONTENT_TYPES = {
    "application/vnd.microsoft.card.oauth",
    "application/vnd.microsoft.card.signin",
}
ADAPTIVE_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.adaptive"
DEFAULT_SIGNIN_MESSAGE = "Connect to continue. This action requires sign-in."
MIN_TYPING_REPLY_CHARS = 30

SIGNIN_TEXT_PATTERN = re.compile(
    r"connect to continue|sign in|signin|authorize|authorization|credentials"
    r"|permission required|federatedknowledgesearchoperation",
    re.IGNORECASE,
)
_CARD_CONTAINER_KEYS = ("columns", "items", "actions")


def is_likely_signin_text(text: str) -> bool:
    return bool(SIGNIN_TEXT_PATTERN.search(text))


def infer_signin_title(message: str) -> str:
    if "sharepoint" in message.lower():
        return "SharePoint authorization required"
    return "Authorization required"


def is_bot_activity(activity: Activity, user_id: str = "user") -> bool:
    """Return whether an activity came from the agent.

    Anything whose ``from.id`` differs from the user id counts as the bot. That
    is a heuristic and can misfile activities in multi-party conversations.
    """

    sender = activity.get("from") or {}
    role = str(sender.get("role") or "").lower()
    sender_id = sender.get("id")
    return role in ("bot", "assistant") or (sender_id is not None and sender_id != user_id)


def extract_text_from_adaptive_card(content: Any) -> str:
    """Collect all ``TextBlock`` text from an Adaptive Card tree, one per line."""

    if not isinstance(content, dict):
        return ""

    parts: list[str] = []
    text = content.get("text")
    if content.get("type") == "TextBlock" and isinstance(text, str) and text.strip():
        parts.append(text.strip())

    for key in ("body", *_CARD_CONTAINER_KEYS):
        children = content.get(key)
        if not isinstance(children, list):
            continue
        for child in children:
            child_text = extract_text_from_adaptive_card(child)
            if child_text:
                parts.append(child_text)

    return "\n".join(parts)


def extract_oauth_metadata(content: Any) -> dict[str, str]:
    """Pull token exchange fields out of an OAuthCard attachment."""

    if not isinstance(content, dict):
        return {}

    metadata: dict[str, str] = {}
    resource = content.get("tokenExchangeResource")
    if isinstance(resource, dict):
        uri = resource.get("uri")
        if isinstance(uri, str) and uri.strip():
            metadata["token_exchange_resource_uri"] = uri.strip()
        resource_id = resource.get("id")
        if isinstance(resource_id, str) and resource_id.strip():
            metadata["token_exchange_resource_id"] = resource_id.strip()

    connection_name = content.get("connectionName")
    if isinstance(connection_name, str) and connection_name.strip():
        metadata["connection_name"] = connection_name.strip()
    return metadata


def find_allow_submit_action(content: Any) -> dict[str, Any] | None:
    """Return the data of the first ``Action.Submit`` whose ``data.action`` is "Allow"."""

    if not isinstance(content, dict):
        return None

    data = content.get("data")
    if content.get("type") == "Action.Submit" and isinstance(data, dict):
        if data.get("action") == "Allow":
            return data

    for key in ("body", *_CARD_CONTAINER_KEYS):
        children = content.get(key)
        if not isinstance(children, list):
            continue
        for child in children:
            found = find_allow_submit_action(child)
            if found is not None:
                return found
    return None


def extract_signin_card(activity: Activity) -> SigninCard | None:
    activity_text = str(activity.get("text") or "").strip()

    for attachment in activity.get("attachments") or []:
        content_type = str(attachment.get("contentType") or "").lower()
        is_oauth = content_type in OAUTH_CARD_CONTENT_TYPES
        is_adaptive = content_type == ADAPTIVE_CARD_CONTENT_TYPE
        if not is_oauth and not is_adaptive:
            continue

        content = attachment.get("content")
        message = extract_text_from_adaptive_card(content).strip() or activity_text
        if not is_oauth and not (message and is_likely_signin_text(message)):
            continue

        return SigninCard(
            title=infer_signin_title(message or "Authorization required"),
            message=message or DEFAULT_SIGNIN_MESSAGE,
            submit_action=find_allow_submit_action(content) if is_adaptive else None,
            **extract_oauth_metadata(content),
        )

    if activity_text and is_likely_signin_text(activity_text):
        return SigninCard(title=infer_signin_title(activity_text), message=activity_text)
    return None


def _adaptive_card_text(activity: Activity) -> str:
    parts = []
    for attachment in activity.get("attachments") or []:
        if attachment.get("contentType") != ADAPTIVE_CARD_CONTENT_TYPE:
            continue
        text = extract_text_from_adaptive_card(attachment.get("content"))
        if text:
            parts.append(text)
    return "\n".join(parts).strip()


def classify_bot_response(
    activities: Iterable[Activity],
    user_id: str = "user",
    *,
    include_typing: bool = True,
) -> BackendReply:
    """Pick the agent reply text and any sign-in card out of an activity batch.

    Bot ``message`` activities are scanned in order for non-sign-in text (then
    Adaptive Card text). When none is found and ``include_typing`` is set, the
    latest bot ``typing`` activity carrying more than a short status line is
    used, since streamed answers accumulate there.
    """

    activities = list(activities)
    signin_card: SigninCard | None = None

    for activity in activities:
        if not is_bot_activity(activity, user_id):
            continue
        if signin_card is None:
            signin_card = extract_signin_card(activity)
        if activity.get("type") != "message":
            continue

        text = str(activity.get("text") or "").strip()
        if text and not is_likely_signin_text(text):
            return BackendReply(bot_reply=text, signin_card=signin_card)

        card_text = _adaptive_card_text(activity)
        if not card_text:
            continue
        if not is_likely_signin_text(card_text):
            return BackendReply(bot_reply=card_text, signin_card=signin_card)
        if signin_card is None:
            signin_card = SigninCard(title=infer_signin_title(card_text), message=card_text)

    if not include_typing:
        return BackendReply(signin_card=signin_card)

    for activity in reversed(activities):
        if activity.get("type") != "typing" or not is_bot_activity(activity, user_id):
            continue
        text = str(activity.get("text") or "").strip()
        if len(text) > MIN_TYPING_REPLY_CHARS and not is_likely_signin_text(text):
            return BackendReply(bot_reply=text, signin_card=signin_card)

    return BackendReply(signin_card=signin_card)
