"""Chat run state machine.

Tracks the single active chat exchange ("run") from the user's message to
its terminal outcome and merges the partial output streamed by the gateway:

    IDLE -> SENDING -> STREAMING -> FINALIZED | ERRORED | ABORTED

Terminal states accept a new run exactly like IDLE; they only differ in the
update reported to the caller.  Starting a run replaces whatever run was
active before it.

The machine is synchronous and performs no I/O: ``handle_event()`` returns a
``ChatUpdate`` describing what changed (and whether the transcript must be
refetched or a notice shown) and the owner of the machine acts on it.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from gateway_sdk.messages import extract_text

logger = logging.getLogger(__name__)

ERROR_FALLBACK_NOTICE = "Error"
ABORTED_NOTICE = "Run aborted"

# Text a user may type to stop the current run instead of sending a message.
ABORT_COMMANDS = frozenset({"/stop", "stop", "abort"})


class ChatRunState(str, Enum):
    """Lifecycle of a chat run."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    ERRORED = "errored"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({
    ChatRunState.FINALIZED,
    ChatRunState.ERRORED,
    ChatRunState.ABORTED,
})


class ChatEventState(str, Enum):
    """``state`` values of inbound ``chat`` events."""

    DELTA = "delta"
    FINAL = "final"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class ChatRun:
    """The active run.

    ``run_id`` starts out as the idempotency key and is replaced by the
    gateway's canonical id once the ``chat.send`` response names one.
    """
    idempotency_key: str
    run_id: str
    stream: str = ""


@dataclass
class ChatUpdate:
    """Outcome of handling one chat event.

    Attributes:
        kind: "ignored", or the event state that was applied.
        stream: Stream buffer after the update.
        refresh_history: The transcript must be refetched.
        notice: Notice to show the user, if any.
        reason: Why the event was ignored (for logging/tests).
    """
    kind: str
    stream: Optional[str] = None
    refresh_history: bool = False
    notice: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self.kind == "ignored"


def is_abort_command(text: str) -> bool:
    """Whether typed text asks to stop the run rather than being sent."""
    return text.strip().lower() in ABORT_COMMANDS


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


def accepts_run_event(active_run_id: Optional[str], event_run_id: Optional[str], state: Any) -> bool:
    """Decide whether an event addressed to ``event_run_id`` applies.

    Events for the active run (or that name no run while one is active)
    apply.  Events for any other run are dropped, except ``final``: a run
    must always be able to finish, so a completion is honoured even when it
    names a run we no longer track.  The cost is that an unrelated run's
    completion may finalize the current one early.
    """
    if state == ChatEventState.FINAL.value:
        return True
    if active_run_id is None:
        return False
    if not event_run_id:
        return True
    return event_run_id == active_run_id


class ChatRunStateMachine:
    """Single active chat run plus its stream buffer."""

    def __init__(self):
        self._run: Optional[ChatRun] = None
        self._state = ChatRunState.IDLE

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ChatRunState:
        return self._state

    @property
    def run(self) -> Optional[ChatRun]:
        return self._run

    @property
    def run_id(self) -> Optional[str]:
        """Id of the active run; None between runs."""
        return self._run.run_id if self._run else None

    @property
    def stream(self) -> Optional[str]:
        """Accumulated partial output; None when no run is active."""
        return self._run.stream if self._run else None

    @property
    def is_active(self) -> bool:
        return self._run is not None

    @property
    def is_terminal(self) -> bool:
        """The last run ended (finalized, errored or aborted)."""
        return self._state in TERMINAL_STATES

    @property
    def is_thinking(self) -> bool:
        """A run is active and no output has streamed yet."""
        return self._run is not None and not self._run.stream

    # =========================================================================
    # Local transitions
    # =========================================================================

    def start_run(self, idempotency_key: Optional[str] = None) -> ChatRun:
        """Begin a new run, replacing any active one."""
        key = idempotency_key or new_idempotency_key()
        if self._run is not None:
            logger.debug(f"Starting run {key} replaces active run {self._run.run_id}")
        self._run = ChatRun(idempotency_key=key, run_id=key)
        self._state = ChatRunState.SENDING
        return self._run

    def adopt_run_id(self, idempotency_key: str, run_id: Any) -> bool:
        """Replace the provisional id with the gateway's canonical run id.

        Only applies while the run started with ``idempotency_key`` is still
        the active one.
        """
        if not isinstance(run_id, str) or not run_id:
            return False
        if self._run is None or self._run.idempotency_key != idempotency_key:
            return False
        self._run.run_id = run_id
        return True

    def fail_send(self, idempotency_key: str) -> bool:
        """Clear the run whose ``chat.send`` request failed."""
        if self._run is None or self._run.idempotency_key != idempotency_key:
            return False
        self._finish(ChatRunState.ERRORED)
        return True

    def abort(self) -> bool:
        """Clear the active run locally (user asked to stop)."""
        if self._run is None:
            return False
        self._finish(ChatRunState.ABORTED)
        return True

    def reset(self) -> None:
        """Forget any run (new connection or session)."""
        self._run = None
        self._state = ChatRunState.IDLE

    # =========================================================================
    # Inbound events
    # =========================================================================

    def handle_event(self, payload: Any, session_key: str) -> ChatUpdate:
        """Apply one ``chat`` event payload.

        Args:
            payload: ``{sessionKey, runId, state, message | errorMessage}``.
            session_key: The session the client is bound to.
        """
        if not isinstance(payload, dict):
            return ChatUpdate("ignored", reason="malformed payload")

        event_session = payload.get("sessionKey")
        if event_session and event_session != session_key:
            return ChatUpdate("ignored", reason="other session")

        state = payload.get("state")
        if not accepts_run_event(self.run_id, payload.get("runId"), state):
            return ChatUpdate("ignored", reason="stale run")

        if state == ChatEventState.DELTA.value:
            return self._apply_delta(payload.get("message"))

        if state == ChatEventState.FINAL.value:
            self._finish(ChatRunState.FINALIZED)
            return ChatUpdate(ChatEventState.FINAL.value, refresh_history=True)

        if state == ChatEventState.ERROR.value:
            self._finish(ChatRunState.ERRORED)
            message = payload.get("errorMessage")
            notice = message if isinstance(message, str) and message else ERROR_FALLBACK_NOTICE
            return ChatUpdate(ChatEventState.ERROR.value, notice=notice)

        if state == ChatEventState.ABORTED.value:
            self._finish(ChatRunState.ABORTED)
            return ChatUpdate(ChatEventState.ABORTED.value, notice=ABORTED_NOTICE)

        logger.debug(f"Ignoring chat event with unknown state {state!r}")
        return ChatUpdate("ignored", reason="unknown state")

    def _apply_delta(self, message: Any) -> ChatUpdate:
        text = extract_text(message)
        if not text:
            return ChatUpdate("ignored", stream=self.stream, reason="empty delta")

        run = self._run
        # Deltas carry the whole text so far; a shorter one arrived out of order.
        if len(text) >= len(run.stream):
            run.stream = text
        self._state = ChatRunState.STREAMING
        return ChatUpdate(ChatEventState.DELTA.value, stream=run.stream)

    def _finish(self, outcome: ChatRunState) -> None:
        self._run = None
        self._state = outcome


__all__ = [
    "ABORTED_NOTICE",
    "ABORT_COMMANDS",
    "ChatEventState",
    "ChatRun",
    "ChatRunState",
    "ChatRunStateMachine",
    "ChatUpdate",
    "TERMINAL_STATES",
    "accepts_run_event",
    "is_abort_command",
    "new_idempotency_key",
]
