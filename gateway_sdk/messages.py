"""Chat message envelopes and display-text extraction.

Gateway messages arrive in several shapes: a bare string, an object with a
``text`` field, an object whose ``content`` is a string, an object whose
``content`` is a list of typed parts, or a bare list of parts.  Instead of
probing those shapes at every call site, ``parse_content()`` classifies a raw
value into one of the content variants below and ``extract_text()`` turns any
variant into the string shown to the user.

Usage:
    from gateway_sdk.messages import extract_text, filter_history, to_transcript

    text = extract_text(payload["message"])
    transcript = to_transcript(filter_history(raw_messages))
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Union


# Sentinel replies the gateway uses for control turns, never shown to users.
NO_REPLY = "NO_REPLY"
HEARTBEAT_OK = "HEARTBEAT_OK"
SENTINEL_TEXTS = frozenset({NO_REPLY, HEARTBEAT_OK})

# Roles that carry internal control or tool traffic.
HIDDEN_ROLES = frozenset({"system", "tool", "toolResult", "tool_result"})


class Role(str, Enum):
    """Transcript roles shown to the user."""

    USER = "user"
    ASSISTANT = "assistant"


# =============================================================================
# Content variants
# =============================================================================

@dataclass(frozen=True)
class PlainText:
    """A message that is just a string."""
    text: str


@dataclass(frozen=True)
class TextField:
    """An envelope carrying a ``text`` string (or string ``content``)."""
    text: str


@dataclass(frozen=True)
class ContentParts:
    """An ordered list of typed parts; only ``type == "text"`` parts display."""
    parts: Sequence[Any]


@dataclass(frozen=True)
class Opaque:
    """Anything else: nothing displayable."""
    value: Any = None


MessageContent = Union[PlainText, TextField, ContentParts, Opaque]


def parse_content(value: Any) -> MessageContent:
    """Classify a raw message value into a content variant.

    Precedence follows the order of the checks: plain string, ``text``
    field, string ``content``, list ``content``, bare list.
    """
    if isinstance(value, str):
        return PlainText(value)
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, str):
            return TextField(text)
        content = value.get("content")
        if isinstance(content, str):
            return TextField(content)
        if isinstance(content, list):
            return ContentParts(tuple(content))
        return Opaque(value)
    if isinstance(value, list):
        return ContentParts(tuple(value))
    return Opaque(value)


def _join_text_parts(parts: Iterable[Any]) -> str:
    texts = []
    for part in parts:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    return "\n".join(texts)


def extract_text(value: Any) -> str:
    """Return the display string of a message value (``""`` when none).

    Accepts either a raw value from the wire or an already parsed
    content variant.
    """
    content = value if isinstance(value, (PlainText, TextField, ContentParts, Opaque)) else parse_content(value)
    if isinstance(content, (PlainText, TextField)):
        return content.text
    if isinstance(content, ContentParts):
        return _join_text_parts(content.parts)
    return ""


# =============================================================================
# Transcript
# =============================================================================

@dataclass
class ChatMessage:
    """One displayable transcript entry."""
    role: Role
    text: str
    timestamp: Optional[Any] = None


def message_role(message: Any) -> str:
    """Raw role string of a history entry (``""`` when absent)."""
    if isinstance(message, dict):
        role = message.get("role")
        if isinstance(role, str):
            return role
    return ""


def is_displayable(message: Any) -> bool:
    """Whether a history entry is conversational content.

    Entries with a hidden role, or whose text is empty, whitespace-only or
    one of the sentinel replies, are control traffic.
    """
    if message_role(message) in HIDDEN_ROLES:
        return False
    text = extract_text(message)
    return bool(text and text.strip()) and text not in SENTINEL_TEXTS


def filter_history(messages: Iterable[Any]) -> List[Any]:
    """Drop non-conversational entries, keeping the original order."""
    return [m for m in messages if is_displayable(m)]


def to_chat_message(message: Any) -> ChatMessage:
    """Convert a raw history entry into a ChatMessage.

    Anything that is not explicitly a user message is shown as assistant
    output.
    """
    role = Role.USER if message_role(message) == Role.USER.value else Role.ASSISTANT
    timestamp = message.get("timestamp") if isinstance(message, dict) else None
    return ChatMessage(role=role, text=extract_text(message), timestamp=timestamp)


def to_transcript(messages: Iterable[Any]) -> List[ChatMessage]:
    """Filter raw history entries and convert them to ChatMessages."""
    return [to_chat_message(m) for m in filter_history(messages)]


__all__ = [
    "ChatMessage",
    "ContentParts",
    "HEARTBEAT_OK",
    "HIDDEN_ROLES",
    "MessageContent",
    "NO_REPLY",
    "Opaque",
    "PlainText",
    "Role",
    "TextField",
    "extract_text",
    "filter_history",
    "is_displayable",
    "message_role",
    "parse_content",
    "to_chat_message",
    "to_transcript",
]
