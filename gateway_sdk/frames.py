"""Frame protocol for the gateway websocket.

Every message on the wire is one JSON object tagged by ``type``:

    req:   Client request   {"type": "req", "id": "...", "method": "...", "params": {...}}
    res:   Server response  {"type": "res", "id": "...", "ok": true, "payload": {...}}
                            {"type": "res", "id": "...", "ok": false, "error": {"message": "..."}}
    event: Server event     {"type": "event", "event": "...", "payload": {...}}

Requests flow client -> server; responses and events flow server -> client.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Union
import json

from gateway_sdk.errors import ProtocolError


# =============================================================================
# Frame Types
# =============================================================================

class FrameType(str, Enum):
    """Discriminator values of the ``type`` field."""

    REQUEST = "req"
    RESPONSE = "res"
    EVENT = "event"


class EventName(str, Enum):
    """Event names consumed by the client."""

    CONNECT_CHALLENGE = "connect.challenge"
    CHAT = "chat"


# =============================================================================
# Frames
# =============================================================================

@dataclass
class Frame:
    """Base class for all frames."""
    type: FrameType

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        if isinstance(d.get("type"), FrameType):
            d["type"] = d["type"].value
        return d

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class RequestFrame(Frame):
    """Client -> server request, correlated to a response by ``id``."""
    type: FrameType = field(default=FrameType.REQUEST)
    id: str = ""
    method: str = ""
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseFrame(Frame):
    """Server -> client answer to a prior request."""
    type: FrameType = field(default=FrameType.RESPONSE)
    id: str = ""
    ok: bool = False
    payload: Any = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        # payload/error are optional on the wire
        if d["payload"] is None:
            del d["payload"]
        if d["error"] is None:
            del d["error"]
        return d

    @property
    def error_message(self) -> Optional[str]:
        """Server-supplied error message, if any."""
        if isinstance(self.error, dict):
            message = self.error.get("message")
            if isinstance(message, str) and message:
                return message
        return None

    @property
    def error_code(self) -> Optional[str]:
        """Server-supplied error code, if any."""
        if isinstance(self.error, dict):
            code = self.error.get("code")
            if code is not None:
                return str(code)
        return None


@dataclass
class EventFrame(Frame):
    """Unsolicited server -> client push."""
    type: FrameType = field(default=FrameType.EVENT)
    event: str = ""
    payload: Any = None


_FRAME_CLASSES = {
    FrameType.REQUEST.value: RequestFrame,
    FrameType.RESPONSE.value: ResponseFrame,
    FrameType.EVENT.value: EventFrame,
}

# Fields that must be present for a frame of each type to be usable.
_REQUIRED_FIELDS = {
    FrameType.REQUEST.value: ("id", "method"),
    FrameType.RESPONSE.value: ("id", "ok"),
    FrameType.EVENT.value: ("event",),
}


# =============================================================================
# Codec
# =============================================================================

def encode_frame(frame: Frame) -> str:
    """Serialize a frame to JSON text."""
    return frame.to_json()


def decode_frame(raw: Union[str, bytes, bytearray]) -> Frame:
    """Deserialize JSON text (or UTF-8 bytes) into a frame object.

    Args:
        raw: One message as received from the transport.

    Returns:
        The decoded frame.

    Raises:
        ProtocolError: If the message is not valid JSON, not an object,
            has an unknown ``type`` or lacks a required field.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Frame must be a JSON object, got {type(data).__name__}")

    frame_type = data.get("type")
    if frame_type not in _FRAME_CLASSES:
        raise ProtocolError(f"Unknown frame type: {frame_type!r}")

    missing = [name for name in _REQUIRED_FIELDS[frame_type] if name not in data]
    if missing:
        raise ProtocolError(f"{frame_type} frame missing field(s): {', '.join(missing)}")

    frame_class = _FRAME_CLASSES[frame_type]
    data["type"] = FrameType(frame_type)

    # Remove unknown fields (forward compatibility)
    known_fields = {f.name for f in frame_class.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in known_fields}

    frame = frame_class(**filtered)
    if isinstance(frame, (RequestFrame, ResponseFrame)):
        frame.id = str(frame.id)
    if isinstance(frame, ResponseFrame):
        frame.ok = frame.ok is True
    if isinstance(frame, RequestFrame) and not isinstance(frame.params, dict):
        frame.params = {}
    return frame


__all__ = [
    "EventFrame",
    "EventName",
    "Frame",
    "FrameType",
    "RequestFrame",
    "ResponseFrame",
    "decode_frame",
    "encode_frame",
]
