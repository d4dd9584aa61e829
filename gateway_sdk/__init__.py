"""Gateway SDK - Protocol and client library for the chat gateway.

Usage:
    from gateway_sdk.client import GatewayClient, load_client_config
    from gateway_sdk.frames import decode_frame, encode_frame
"""

from gateway_sdk.constants import SDK_VERSION

__version__ = SDK_VERSION

from gateway_sdk.client import (
    ClientConfig,
    ConnectionState,
    GatewayClient,
    GatewayConfig,
    RecoveryConfig,
    load_client_config,
)
from gateway_sdk.errors import (
    ConfigurationError,
    GatewayError,
    NotConnectedError,
    ProtocolError,
    ReconnectingError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from gateway_sdk.frames import (
    EventFrame,
    Frame,
    FrameType,
    RequestFrame,
    ResponseFrame,
    decode_frame,
    encode_frame,
)
from gateway_sdk.messages import ChatMessage, extract_text, filter_history

__all__ = [
    # Client
    "ClientConfig",
    "ConnectionState",
    "GatewayClient",
    "GatewayConfig",
    "RecoveryConfig",
    "load_client_config",
    # Errors
    "ConfigurationError",
    "GatewayError",
    "NotConnectedError",
    "ProtocolError",
    "ReconnectingError",
    "RemoteError",
    "RequestTimeoutError",
    "TransportError",
    # Frames
    "EventFrame",
    "Frame",
    "FrameType",
    "RequestFrame",
    "ResponseFrame",
    "decode_frame",
    "encode_frame",
    # Messages
    "ChatMessage",
    "extract_text",
    "filter_history",
]
