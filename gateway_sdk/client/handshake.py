"""Authentication handshake with the gateway.

After the websocket opens the gateway sends a ``connect.challenge`` event
carrying a nonce.  The client answers with a ``connect`` request describing
itself and presenting its token; the gateway's response decides whether the
connection becomes usable.

    IDLE -> AWAITING_CHALLENGE   (transport open)
    AWAITING_CHALLENGE -> CONNECTED | FAILED   (connect response / timeout)
    * -> IDLE                    (transport closed)

A failed handshake is not retried on its own; a new attempt only happens
when the transport closes and the connection manager reconnects.

The nonce is recorded but not sent back: the token alone authenticates the
client.  ``auth_payload()`` is the single place to change if the gateway
starts requiring a signed nonce.
"""

import asyncio
import locale
import logging
import platform
import sys
from enum import Enum
from typing import Any, Callable, Dict, Optional

from gateway_sdk.client.config import GatewayConfig
from gateway_sdk.constants import PROTOCOL_VERSION, SDK_VERSION
from gateway_sdk.errors import GatewayError

logger = logging.getLogger(__name__)

CLIENT_ID = "webchat-ui"
CLIENT_MODE = "webchat"
CLIENT_ROLE = "operator"
CLIENT_SCOPES = ("operator.read", "operator.write")

CONNECTED_NOTICE = "Connected to gateway"


class HandshakeState(Enum):
    """Progress of the connect handshake on the current transport."""
    IDLE = "idle"
    AWAITING_CHALLENGE = "awaiting_challenge"
    CONNECTED = "connected"
    FAILED = "failed"


def _detect_locale() -> str:
    try:
        lang = locale.getlocale()[0]
    except ValueError:
        lang = None
    return (lang or "en_US").replace("_", "-")


def default_user_agent() -> str:
    return (
        f"gateway-sdk/{SDK_VERSION} "
        f"Python/{platform.python_version()} ({sys.platform})"
    )


class HandshakeSequencer:
    """Answers the gateway challenge with an authenticated ``connect``."""

    def __init__(
        self,
        config: GatewayConfig,
        correlator: Any,
        connection: Any,
        *,
        on_connected: Optional[Callable[[Any], None]] = None,
        on_notice: Optional[Callable[[str], None]] = None,
    ):
        self._config = config
        self._correlator = correlator
        self._connection = connection
        self._on_connected = on_connected
        self._on_notice = on_notice

        self._state = HandshakeState.IDLE
        self._nonce: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> HandshakeState:
        return self._state

    @property
    def nonce(self) -> Optional[str]:
        """Nonce of the last challenge received on this transport."""
        return self._nonce

    def update_config(self, config: GatewayConfig) -> None:
        self._config = config

    # =========================================================================
    # Transport lifecycle
    # =========================================================================

    def on_transport_open(self) -> None:
        self._state = HandshakeState.AWAITING_CHALLENGE
        self._nonce = None

    def on_transport_closed(self) -> None:
        self._state = HandshakeState.IDLE
        self._nonce = None
        self.cancel()

    def cancel(self) -> None:
        """Abandon an in-flight connect request, if any."""
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # =========================================================================
    # Challenge / connect
    # =========================================================================

    def on_challenge(self, payload: Any) -> asyncio.Task:
        """Handle a ``connect.challenge`` event.

        Returns:
            The task sending the ``connect`` request.
        """
        if isinstance(payload, dict) and isinstance(payload.get("nonce"), str):
            self._nonce = payload["nonce"]
        if self._state != HandshakeState.AWAITING_CHALLENGE:
            logger.debug(f"Challenge received in state {self._state.value}, answering anyway")
            self._state = HandshakeState.AWAITING_CHALLENGE

        self.cancel()
        self._task = asyncio.create_task(self._send_connect(), name="gateway-handshake")
        return self._task

    def auth_payload(self, nonce: Optional[str]) -> Dict[str, Any]:
        """Credentials presented in the ``connect`` request."""
        auth: Dict[str, Any] = {}
        if self._config.token:
            auth["token"] = self._config.token
        return auth

    def build_connect_params(self, nonce: Optional[str] = None) -> Dict[str, Any]:
        """Parameters of the ``connect`` request."""
        return {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "version": SDK_VERSION,
                "platform": sys.platform,
                "mode": CLIENT_MODE,
            },
            "role": CLIENT_ROLE,
            "scopes": list(CLIENT_SCOPES),
            "caps": [],
            "auth": self.auth_payload(nonce),
            "userAgent": default_user_agent(),
            "locale": self._config.locale or _detect_locale(),
        }

    async def _send_connect(self) -> bool:
        params = self.build_connect_params(self._nonce)
        try:
            payload = await self._correlator.request("connect", params, handshake=True)
        except asyncio.CancelledError:
            raise
        except GatewayError as e:
            self._state = HandshakeState.FAILED
            logger.warning(f"Gateway handshake failed: {e}")
            self._connection.mark_handshake_failed(str(e))
            self._notify(f"Connection failed: {e}")
            return False

        if not self._connection.mark_connected():
            self._state = HandshakeState.IDLE
            return False

        self._state = HandshakeState.CONNECTED
        logger.info("Gateway handshake accepted")
        self._notify(CONNECTED_NOTICE)
        if self._on_connected:
            try:
                self._on_connected(payload)
            except Exception:
                logger.exception("Error in connected callback")
        return True

    def _notify(self, text: str) -> None:
        if self._on_notice:
            try:
                self._on_notice(text)
            except Exception as e:
                logger.warning(f"Error in notice callback: {e}")


__all__ = [
    "CONNECTED_NOTICE",
    "HandshakeSequencer",
    "HandshakeState",
    "PROTOCOL_VERSION",
]
