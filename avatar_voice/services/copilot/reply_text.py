"""Prompt wrapping and speech cleanup for Copilot replies."""

from __future__ import annotations

import re

from avatar_voice.core.settings import get_settings

_CLEANUP_RULES: list[tuple[re.Pattern[str], str]] = [
    # Citation reference blocks: [1]: https://... "title"
    (re.compile(r"\n?\[\d+\]:\s*https?://[^\n]*"), ""),
    # Inline citation markers: [1], [2]
    (re.compile(r"\[\d+\]"), ""),
    # [text](url) -> text
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)"), r"\1"),
    (re.compile(r"(?<!_)_(?!_)(.+?)(?<!_)_(?!_)"), r"\1"),
    (re.compile(r"^\s*[-*]\s+", re.MULTILINE), ""),
    (re.compile(r"^\s*\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
]


def build_prompt(user_text: str, instructions: str | None = None) -> str:
    """Wrap the user's question with the configured prompt instructions.

    Args:
        user_text: Raw user utterance.
        instructions: Override for ``COPILOT_PROMPT_INSTRUCTIONS``.

    Returns:
        The tagged prompt, or ``user_text`` unchanged when no instructions exist.
    """

    if instructions is None:
        instructions = get_settings().copilot_prompt_instructions
    instructions = (instructions or "").strip()
    if not instructions:
        return user_text
    return f"<question>{user_text}</question>\n<instructions>{instructions}</instructions>"


def clean_bot_reply(text: str, enabled: bool | None = None) -> str:
    """Strip markdown and citations so a reply reads naturally as speech.

    Cleanup only runs when ``COPILOT_CLEAN_REPLY`` is enabled; otherwise the
    text is returned as-is.
    """

    if enabled is None:
        enabled = get_settings().copilot_clean_reply
    if not enabled:
        return text

    cleaned = text
    for pattern, replacement in _CLEANUP_RULES:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned.strip()
