"""Frame trace logging.

Appends raw wire traffic to a trace file so protocol problems can be
diagnosed after the fact without turning on debug logging everywhere.

The trace path comes from ``GATEWAY_TRACE_LOG``.  An empty value disables
tracing; when the variable is unset the trace goes to
``gateway_sdk_trace.log`` in the system temp directory.  Credentials in
outbound ``connect`` requests are masked before they reach the file.

Tracing is on by default and records every frame verbatim apart from the
token, so chat message text and history end up in the trace file as well.
On shared machines set ``GATEWAY_TRACE_LOG`` to a private path, or to an
empty value to turn tracing off.

Usage:
    from gateway_sdk.trace import trace, trace_frame

    trace("connection", "transport opened")
    trace_frame("out", frame_text)
"""

import json
import os
import tempfile
import time
from typing import Any, Optional

TRACE_ENV_VAR = "GATEWAY_TRACE_LOG"
DEFAULT_TRACE_FILENAME = "gateway_sdk_trace.log"

REDACTED = "***"

# Parent directories already created during this process.
_created_dirs = set()


def trace_path() -> Optional[str]:
    """Current trace file, or None when tracing is turned off."""
    value = os.environ.get(TRACE_ENV_VAR)
    if value is None:
        return os.path.join(tempfile.gettempdir(), DEFAULT_TRACE_FILENAME)
    return value or None


def _append(path: str, line: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    if directory not in _created_dirs:
        os.makedirs(directory, exist_ok=True)
        _created_dirs.add(directory)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)


def trace(component: str, msg: str) -> None:
    """Append one ``[time] [component] msg`` line to the trace file.

    Failures to write are swallowed; tracing must never break the client.
    """
    path = trace_path()
    if not path:
        return
    stamp = time.strftime("%H:%M:%S")
    millis = int(time.time() * 1000) % 1000
    try:
        _append(path, f"[{stamp}.{millis:03d}] [{component}] {msg}\n")
    except OSError:
        pass


def redact_frame(text: str) -> str:
    """Mask the auth token inside a serialized ``connect`` request.

    Non-JSON input and frames without credentials are returned unchanged.
    """
    try:
        data: Any = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
    if not isinstance(data, dict):
        return text
    params = data.get("params")
    if not isinstance(params, dict):
        return text
    auth = params.get("auth")
    if not isinstance(auth, dict) or not auth:
        return text
    params["auth"] = {key: REDACTED for key in auth}
    return json.dumps(data)


def trace_frame(direction: str, text: Any) -> None:
    """Trace one raw frame.

    Args:
        direction: ``"in"`` or ``"out"``.
        text: The frame as sent/received (str or bytes).
    """
    if not trace_path():
        return
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    trace("frame", f"{direction} {redact_frame(str(text))}")


__all__ = [
    "redact_frame",
    "trace",
    "trace_frame",
    "trace_path",
]
