"""Gateway chat client.

``GatewayClient`` owns one connection to the gateway and everything layered
on it: the request correlator, the connect handshake, the chat run state
machine, the transcript and the system notices.  Inbound frames are
dispatched synchronously in arrival order; anything that has to wait for
the gateway (history fetches, sends, the handshake) runs as a background
task owned by the client and cancelled by ``shutdown()``.

Usage:
    from gateway_sdk.client import GatewayClient
    from gateway_sdk.client.config import load_client_config

    client = GatewayClient(
        load_client_config(),
        on_notice=print,
        on_stream=lambda text: print(text, end="\\r"),
    )
    await client.start()
    await client.send_message("Hello!")
    ...
    await client.shutdown()
"""

import asyncio
import dataclasses
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from gateway_sdk.client.chat import (
    ABORTED_NOTICE,
    ChatRunStateMachine,
    ChatUpdate,
    is_abort_command,
)
from gateway_sdk.client.config import ClientConfig
from gateway_sdk.client.connection import (
    ConnectionManager,
    ConnectionState,
    StatusCallback,
    TransportFactory,
)
from gateway_sdk.client.correlator import RequestCorrelator
from gateway_sdk.client.handshake import HandshakeSequencer
from gateway_sdk.client.notices import SystemNotices
from gateway_sdk.errors import (
    GatewayError,
    ProtocolError,
    ReconnectingError,
    TransportError,
)
from gateway_sdk.frames import EventFrame, EventName, ResponseFrame, decode_frame
from gateway_sdk.messages import ChatMessage, Role, to_transcript

logger = logging.getLogger(__name__)


class GatewayClient:
    """Chat client for one gateway session.

    Lifecycle: construct, ``start()`` (connects when a token is
    configured), use, ``shutdown()``.

    Observers receive plain values through optional callbacks; exceptions
    raised by observers are logged and never reach the engine.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        on_notice: Optional[Callable[[str], None]] = None,
        on_status_change: Optional[StatusCallback] = None,
        on_transcript: Optional[Callable[[List[ChatMessage]], None]] = None,
        on_stream: Optional[Callable[[Optional[str]], None]] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """Initialize the client.

        Args:
            config: Client configuration (defaults if None).
            on_notice: Called with each new system notice.
            on_status_change: Called with ConnectionStatus on transitions.
            on_transcript: Called with the transcript whenever it changes.
            on_stream: Called with the stream buffer whenever it changes
                (None once the run ends).
            transport_factory: Override of the websocket opener (tests).
        """
        self._config = config or ClientConfig()
        self._on_notice = on_notice
        self._on_transcript = on_transcript
        self._on_stream = on_stream

        self._notices = SystemNotices()
        self._transcript: List[ChatMessage] = []
        self._history_loading = False
        self._tasks: Set[asyncio.Task] = set()

        self._connection = ConnectionManager(
            self._config.gateway,
            self._config.recovery,
            on_message=self._handle_message,
            on_open=self._handle_open,
            on_close=self._handle_close,
            on_notice=self.add_notice,
            on_status_change=on_status_change,
            transport_factory=transport_factory,
        )
        self._correlator = RequestCorrelator(
            self._connection,
            timeout=self._config.gateway.request_timeout,
        )
        self._handshake = HandshakeSequencer(
            self._config.gateway,
            self._correlator,
            self._connection,
            on_connected=self._handle_connected,
            on_notice=self.add_notice,
        )
        self._chat = ChatRunStateMachine()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def session_key(self) -> str:
        return self._config.gateway.session_key

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def handshake(self) -> HandshakeSequencer:
        return self._handshake

    @property
    def chat(self) -> ChatRunStateMachine:
        return self._chat

    @property
    def notices(self) -> List[str]:
        return self._notices.snapshot()

    @property
    def transcript(self) -> List[ChatMessage]:
        return list(self._transcript)

    @property
    def stream(self) -> Optional[str]:
        return self._chat.stream

    @property
    def run_id(self) -> Optional[str]:
        return self._chat.run_id

    @property
    def is_thinking(self) -> bool:
        return self._chat.is_thinking

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """Connect if a token is configured; otherwise greet with a hint.

        Returns:
            True if a transport was opened.
        """
        if not self._config.gateway.has_token:
            self.add_notice("Welcome! Configure the gateway address and token to connect")
            return False
        return await self.connect()

    async def connect(self) -> bool:
        """Open the connection (see ConnectionManager.connect()).

        Raises:
            ConfigurationError: If no token is configured.
        """
        return await self._connection.connect()

    async def shutdown(self) -> None:
        """Tear everything down; no reconnection afterwards."""
        self._correlator.fail_all(ReconnectingError("client shut down"))
        self._handshake.cancel()
        await self._connection.close()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def reset_connection(self) -> bool:
        """Explicit teardown followed by a fresh connect.

        Pending requests fail with ReconnectingError; the close is clean so
        no automatic reconnection is scheduled in between.
        """
        self._correlator.fail_all(ReconnectingError())
        await self._connection.disconnect()
        return await self.connect()

    async def apply_config(self, config: ClientConfig) -> bool:
        """Switch to new settings and reconnect with them.

        Returns:
            True if a transport was opened.

        Raises:
            ConfigurationError: If the new settings carry no token.
        """
        self._config = config
        self._connection.update_config(config.gateway)
        self._handshake.update_config(config.gateway)
        self._correlator.timeout = config.gateway.request_timeout
        self.add_notice("Settings saved")
        return await self.reset_connection()

    # =========================================================================
    # Requests
    # =========================================================================

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a request to the gateway and return its payload.

        Raises:
            NotConnectedError, RequestTimeoutError, RemoteError,
            ReconnectingError, TransportError.
        """
        return await self._correlator.request(method, params)

    async def fetch_status(self) -> Dict[str, Any]:
        """Gateway ``status`` payload."""
        payload = await self.request("status", {})
        return payload if isinstance(payload, dict) else {}

    async def list_sessions(self) -> List[Dict[str, Any]]:
        """Sessions known to the gateway (``sessions.list``)."""
        payload = await self.request("sessions.list", {})
        sessions = payload.get("sessions") if isinstance(payload, dict) else None
        return [s for s in sessions if isinstance(s, dict)] if isinstance(sessions, list) else []

    async def test_connection(self) -> bool:
        """Check the gateway with ``status`` and report the result as a notice."""
        self.add_notice("Testing connection...")
        try:
            status = await self.fetch_status()
        except GatewayError as e:
            self.add_notice(f"Connection test failed: {e}")
            return False
        self.add_notice(f"Connection OK - {status.get('hostname') or 'ok'}")
        return True

    # =========================================================================
    # Chat
    # =========================================================================

    async def send_message(self, text: str) -> bool:
        """Send user text as a chat message.

        Abort commands (``/stop``, ``stop``, ``abort``) stop the current run
        instead of being sent.

        Returns:
            True if the gateway accepted the message (or abort was issued).
        """
        text = text.strip()
        if not text:
            return False
        if is_abort_command(text):
            await self.abort()
            return True

        self._set_transcript(self._transcript + [
            ChatMessage(role=Role.USER, text=text, timestamp=int(time.time() * 1000)),
        ])
        run = self._chat.start_run()
        self._emit_stream()

        params = {
            "sessionKey": self.session_key,
            "message": text,
            "deliver": False,
            "idempotencyKey": run.idempotency_key,
        }
        try:
            payload = await self.request("chat.send", params)
        except GatewayError as e:
            logger.warning(f"chat.send failed: {e}")
            if self._chat.fail_send(run.idempotency_key):
                self._emit_stream()
            self.add_notice(f"Send failed: {e}")
            return False

        if isinstance(payload, dict):
            self._chat.adopt_run_id(run.idempotency_key, payload.get("runId"))
        return True

    async def send_command(self, command: str) -> bool:
        """Send a slash command; commands travel as ordinary chat text."""
        return await self.send_message(command)

    async def abort(self) -> None:
        """Stop the current run (best-effort).

        The run is cleared locally right away; a failing ``chat.abort``
        request is logged and otherwise ignored.
        """
        if self._chat.abort():
            self._emit_stream()
            self.add_notice(ABORTED_NOTICE)
        try:
            await self.request("chat.abort", {"sessionKey": self.session_key})
        except GatewayError as e:
            logger.debug(f"chat.abort failed (ignored): {e}")

    async def load_history(self) -> bool:
        """Replace the transcript with the gateway's history.

        Skipped while another fetch is in flight.

        Returns:
            True if the transcript was replaced.
        """
        if self._history_loading:
            logger.debug("load_history(): fetch already in flight")
            return False
        self._history_loading = True
        try:
            payload = await self.request(
                "chat.history",
                {"sessionKey": self.session_key, "limit": self._config.gateway.history_limit},
            )
            messages = payload.get("messages") if isinstance(payload, dict) else None
            self._set_transcript(to_transcript(messages if isinstance(messages, list) else []))
            return True
        except GatewayError as e:
            logger.error(f"Failed to load chat history: {e}")
            return False
        finally:
            self._history_loading = False

    def switch_session(self, session_key: str) -> Optional[asyncio.Task]:
        """Bind to another session and refetch its history.

        Returns:
            The history fetch task, or None when not connected.
        """
        gateway = dataclasses.replace(self._config.gateway, session_key=session_key)
        self._config.gateway = gateway
        self._connection.update_config(gateway)
        self._handshake.update_config(gateway)
        self.add_notice(f"Switched to session: {gateway.session_key}")
        self._chat.reset()
        self._emit_stream()
        self._set_transcript([])
        if not self._connection.is_connected:
            return None
        return self._spawn(self.load_history(), name="gateway-history")

    # =========================================================================
    # Notices
    # =========================================================================

    def add_notice(self, text: str) -> None:
        """Record a system notice and tell the observer."""
        self._notices.add(text)
        if self._on_notice:
            try:
                self._on_notice(text)
            except Exception as e:
                logger.warning(f"Error in notice callback: {e}")

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    def _handle_message(self, raw: Any) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            logger.error(f"Dropping malformed frame: {e}")
            return

        if isinstance(frame, ResponseFrame):
            self._correlator.handle_response(frame)
        elif isinstance(frame, EventFrame):
            self._handle_event(frame)
        else:
            logger.debug(f"Ignoring unexpected {frame.type.value} frame")

    def _handle_event(self, frame: EventFrame) -> None:
        if frame.event == EventName.CONNECT_CHALLENGE.value:
            self._track(self._handshake.on_challenge(frame.payload))
        elif frame.event == EventName.CHAT.value:
            self._apply_chat_update(self._chat.handle_event(frame.payload, self.session_key))
        else:
            logger.debug(f"Unhandled event: {frame.event}")

    def _apply_chat_update(self, update: ChatUpdate) -> None:
        if update.ignored:
            logger.debug(f"Chat event ignored: {update.reason}")
            return
        self._emit_stream()
        if update.notice:
            self.add_notice(update.notice)
        if update.refresh_history:
            self._spawn(self.load_history(), name="gateway-history")

    def _handle_open(self) -> None:
        self._handshake.on_transport_open()

    def _handle_close(self, code: Optional[int]) -> None:
        self._handshake.on_transport_closed()
        # Responses can no longer arrive for anything sent on the closed socket
        self._correlator.fail_all(TransportError(f"connection closed (code={code})"))

    def _handle_connected(self, payload: Any) -> None:
        self._chat.reset()
        self._emit_stream()
        self._spawn(self.load_history(), name="gateway-history")

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _set_transcript(self, messages: List[ChatMessage]) -> None:
        self._transcript = messages
        if self._on_transcript:
            try:
                self._on_transcript(list(messages))
            except Exception as e:
                logger.warning(f"Error in transcript callback: {e}")

    def _emit_stream(self) -> None:
        if self._on_stream:
            try:
                self._on_stream(self._chat.stream)
            except Exception as e:
                logger.warning(f"Error in stream callback: {e}")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        return self._track(asyncio.create_task(coro, name=name))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = ["GatewayClient"]
