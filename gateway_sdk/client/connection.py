"""Websocket connection to the gateway with automatic reconnection.

The connection manager owns the transport handle and the connection state
machine:

    DISCONNECTED -> CONNECTING      (connect())
    CONNECTING   -> CONNECTED       (handshake accepted, see mark_connected())
    CONNECTING   -> DISCONNECTED    (handshake rejected / transport closed)
    *            -> RECONNECTING    (unclean close or failed open, retry scheduled)
    RECONNECTING -> CONNECTING      (retry timer fired)
    *            -> DISCONNECTED    (disconnect())

Opening the websocket does not make the connection usable: the gateway
first sends a ``connect.challenge`` event and only a successful ``connect``
request flips the state to CONNECTED.  Until then only the handshake
request itself may be written (``send_handshake()``).

A close with code 1000 is an expected shutdown and is not retried.  Every
other close, transport error or failed open schedules a single retry after
``RecoveryConfig.reconnect_delay`` seconds, replacing any retry that was
already scheduled.

Usage:
    manager = ConnectionManager(config.gateway, config.recovery, on_message=handle)
    await manager.connect()
    ...
    await manager.send(RequestFrame(id="r1", method="status"))
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from gateway_sdk.client.config import GatewayConfig, RecoveryConfig
from gateway_sdk.errors import ConfigurationError, NotConnectedError, TransportError
from gateway_sdk.frames import RequestFrame, encode_frame
from gateway_sdk.trace import trace, trace_frame

logger = logging.getLogger(__name__)

# Close code of an explicit, expected shutdown (RFC 6455 "normal closure").
CLEAN_CLOSE_CODE = 1000

TOKEN_REQUIRED_NOTICE = "Gateway token required: set a token in the settings before connecting"


class ConnectionState(Enum):
    """Connection state of the gateway client.

    States:
        DISCONNECTED: No usable connection, no retry scheduled.
        CONNECTING: Transport opening or handshake in progress.
        CONNECTED: Handshake accepted; requests may be sent.
        RECONNECTING: Connection lost, a retry is scheduled.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class ConnectionStatus:
    """Connection status snapshot for UI display.

    Attributes:
        state: Current connection state.
        next_retry_in: Seconds until the scheduled retry (None if none).
        last_error: Description of the last error encountered.
        close_code: Close code of the last transport closure.
    """
    state: ConnectionState
    next_retry_in: Optional[float] = None
    last_error: Optional[str] = None
    close_code: Optional[int] = None


StatusCallback = Callable[[ConnectionStatus], None]
TransportFactory = Callable[[str], Awaitable[Any]]


async def open_websocket(url: str) -> Any:
    """Open a websocket to ``url`` (default transport factory)."""
    return await websockets.connect(url, max_size=None)


class ConnectionManager:
    """Owns the gateway transport and its state machine.

    Thread safety: all mutable state is accessed only from the asyncio
    event loop; no locks required.
    """

    def __init__(
        self,
        config: GatewayConfig,
        recovery: Optional[RecoveryConfig] = None,
        *,
        on_message: Callable[[Any], None],
        on_open: Optional[Callable[[], None]] = None,
        on_close: Optional[Callable[[Optional[int]], None]] = None,
        on_notice: Optional[Callable[[str], None]] = None,
        on_status_change: Optional[StatusCallback] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """Initialize the connection manager.

        Args:
            config: Gateway address and credentials.
            recovery: Reconnection settings (defaults if None).
            on_message: Called with every raw inbound message, in order.
            on_open: Called once the transport is open (before any message).
            on_close: Called with the close code when the transport goes away.
            on_notice: Called with human-readable connection notices.
            on_status_change: Called with a ConnectionStatus on transitions.
            transport_factory: Coroutine function opening a transport for a
                URL.  The transport must support ``send()``, ``close()``,
                async iteration and ``close_code``.
        """
        self._config = config
        self._recovery = recovery or RecoveryConfig()
        self._on_message = on_message
        self._on_open = on_open
        self._on_close = on_close
        self._on_notice = on_notice
        self._on_status_change = on_status_change
        self._transport_factory = transport_factory or open_websocket

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # Bumped by disconnect() so in-flight opens know they were superseded.
        self._generation = 0
        self._closed = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        """Get the current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the handshake completed and requests may be sent."""
        return self._state == ConnectionState.CONNECTED and self._transport is not None

    @property
    def is_open(self) -> bool:
        """Check if a transport is currently open."""
        return self._transport is not None

    @property
    def reconnect_scheduled(self) -> bool:
        """Check if a reconnection attempt is pending."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def update_config(self, config: GatewayConfig) -> None:
        """Use a new gateway config for subsequent connection attempts."""
        self._config = config

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> bool:
        """Open the transport.

        A no-op while connecting, connected, or while a transport is still
        open.

        Returns:
            True if a new transport was opened.

        Raises:
            ConfigurationError: If no auth token is configured.  No
                transport is created in that case.
        """
        if self._closed:
            logger.debug("connect(): manager closed, ignoring")
            return False
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED) or self._transport is not None:
            logger.debug(f"connect(): already {self._state.value}, ignoring")
            return False

        if not self._config.has_token:
            self._cancel_reconnect()
            self._transition_to(ConnectionState.DISCONNECTED, last_error="token required")
            self._notify_notice(TOKEN_REQUIRED_NOTICE)
            raise ConfigurationError("gateway token required")

        self._cancel_reconnect()
        self._transition_to(ConnectionState.CONNECTING)
        generation = self._generation
        url = self._config.url

        logger.info(f"Connecting to gateway at {url}")
        try:
            transport = await asyncio.wait_for(
                self._transport_factory(url),
                timeout=self._recovery.connect_timeout,
            )
        except asyncio.CancelledError:
            if generation == self._generation:
                self._transition_to(ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            if generation != self._generation:
                return False
            error = str(e) or type(e).__name__
            logger.warning(f"Failed to open websocket to {url}: {error}")
            self._transition_to(ConnectionState.DISCONNECTED, last_error=error)
            self._notify_notice(f"WebSocket connection failed: {error}")
            self._schedule_reconnect(error)
            return False

        if generation != self._generation:
            # disconnect() ran while the socket was opening
            logger.debug("connect(): superseded while opening, closing new transport")
            await self._close_transport(transport, CLEAN_CLOSE_CODE, "superseded")
            return False

        self._transport = transport
        trace("connection", f"transport open: {url}")
        self._safe_call(self._on_open)
        self._reader_task = asyncio.create_task(
            self._read_loop(transport),
            name="gateway-reader",
        )
        return True

    async def disconnect(
        self,
        code: int = CLEAN_CLOSE_CODE,
        reason: str = "client disconnect",
    ) -> None:
        """Close the transport without scheduling a reconnection."""
        self._cancel_reconnect()
        self._generation += 1

        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None

        if self._state != ConnectionState.DISCONNECTED:
            self._transition_to(ConnectionState.DISCONNECTED, close_code=code if transport else None)

        if transport is not None:
            trace("connection", f"transport closed by client ({code})")
            self._safe_call(self._on_close, code)
            await self._close_transport(transport, code, reason)

        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        """Permanently close; no further connects or reconnects."""
        self._closed = True
        await self.disconnect()

    # =========================================================================
    # Sending
    # =========================================================================

    def ensure_writable(self, handshake: bool = False) -> None:
        """Raise NotConnectedError unless a frame may be written now.

        Args:
            handshake: The frame is the ``connect`` request, which only
                needs an open transport.
        """
        if self._transport is None:
            raise NotConnectedError()
        if not handshake and self._state != ConnectionState.CONNECTED:
            raise NotConnectedError()

    async def send(self, frame: RequestFrame) -> None:
        """Write a request frame.

        Raises:
            NotConnectedError: If not CONNECTED (nothing is written).
            TransportError: If the write fails.
        """
        self.ensure_writable()
        await self._write(frame)

    async def send_handshake(self, frame: RequestFrame) -> None:
        """Write the handshake request (requires only an open transport)."""
        self.ensure_writable(handshake=True)
        await self._write(frame)

    async def _write(self, frame: RequestFrame) -> None:
        text = encode_frame(frame)
        trace_frame("out", text)
        try:
            await self._transport.send(text)
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"_write: connection lost while writing: {e}")
            raise TransportError(f"Connection lost: {e}") from e

    # =========================================================================
    # Handshake outcome (driven by the handshake sequencer)
    # =========================================================================

    def mark_connected(self) -> bool:
        """Transition to CONNECTED after the gateway accepted the handshake."""
        if self._transport is None:
            logger.warning("mark_connected(): transport already gone")
            return False
        self._transition_to(ConnectionState.CONNECTED)
        return True

    def mark_handshake_failed(self, reason: str) -> None:
        """Record a rejected handshake; the transport is left as is."""
        self._transition_to(ConnectionState.DISCONNECTED, last_error=reason)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _read_loop(self, transport: Any) -> None:
        """Dispatch inbound messages in arrival order until the socket closes."""
        error: Optional[str] = None
        try:
            async for message in transport:
                trace_frame("in", message)
                try:
                    self._on_message(message)
                except Exception:
                    logger.exception("Error while handling inbound frame")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            error = str(e)
            logger.debug(f"_read_loop: connection closed: {e}")
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"_read_loop: transport error: {error}")

        self._handle_closed(transport, getattr(transport, "close_code", None), error)

    def _handle_closed(self, transport: Any, code: Optional[int], error: Optional[str]) -> None:
        if transport is not self._transport:
            # Already torn down by disconnect()
            return

        self._transport = None
        self._reader_task = None
        clean = code == CLEAN_CLOSE_CODE
        logger.info(f"Gateway connection closed (code={code}, clean={clean})")
        trace("connection", f"transport closed by peer ({code})")

        self._transition_to(ConnectionState.DISCONNECTED, last_error=error, close_code=code)
        self._safe_call(self._on_close, code)

        if not clean:
            self._schedule_reconnect(error or f"closed with code {code}")

    def _schedule_reconnect(self, reason: Optional[str] = None) -> None:
        """Schedule one reconnection attempt, replacing any pending one."""
        if self._closed:
            return
        if not self._recovery.enabled:
            logger.info("Automatic reconnection disabled")
            return

        self._cancel_reconnect()
        delay = self._recovery.reconnect_delay
        logger.info(f"Reconnecting in {delay:.1f}s")
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay),
            name="gateway-reconnect",
        )
        self._transition_to(ConnectionState.RECONNECTING, next_retry_in=delay, last_error=reason)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after(self, delay: float) -> None:
        """Background task: wait, then try to connect again."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug("Reconnection wait cancelled")
            return

        self._reconnect_task = None
        try:
            await self.connect()
        except ConfigurationError as e:
            logger.warning(f"Reconnection aborted: {e}")

    async def _close_transport(self, transport: Any, code: int, reason: str) -> None:
        try:
            await transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error while closing transport: {e}")

    def _transition_to(self, new_state: ConnectionState, **details: Any) -> None:
        """Transition to a new state and notify listeners."""
        old_state = self._state
        self._state = new_state

        logger.debug(f"Connection state: {old_state.value} -> {new_state.value}")

        if self._on_status_change:
            try:
                self._on_status_change(ConnectionStatus(state=new_state, **details))
            except Exception as e:
                logger.warning(f"Error in status callback: {e}")

    def _notify_notice(self, text: str) -> None:
        if self._on_notice:
            try:
                self._on_notice(text)
            except Exception as e:
                logger.warning(f"Error in notice callback: {e}")

    def _safe_call(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in connection callback")


__all__ = [
    "CLEAN_CLOSE_CODE",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "StatusCallback",
    "TOKEN_REQUIRED_NOTICE",
    "TransportFactory",
    "open_websocket",
]
