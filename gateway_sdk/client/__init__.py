"""Gateway client implementations."""

from gateway_sdk.client.chat import ChatRunState, ChatRunStateMachine, ChatUpdate
from gateway_sdk.client.config import (
    ClientConfig,
    GatewayConfig,
    RecoveryConfig,
    load_client_config,
)
from gateway_sdk.client.connection import ConnectionManager, ConnectionState, ConnectionStatus
from gateway_sdk.client.correlator import RequestCorrelator
from gateway_sdk.client.gateway import GatewayClient
from gateway_sdk.client.handshake import HandshakeSequencer, HandshakeState

__all__ = [
    "ChatRunState",
    "ChatRunStateMachine",
    "ChatUpdate",
    "ClientConfig",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "GatewayClient",
    "GatewayConfig",
    "HandshakeSequencer",
    "HandshakeState",
    "RecoveryConfig",
    "RequestCorrelator",
    "load_client_config",
]
