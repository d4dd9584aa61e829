"""Error taxonomy for the gateway client.

Every error raised by the SDK derives from ``GatewayError`` so callers can
catch the whole family at once:

    try:
        payload = await client.request("status")
    except RequestTimeoutError:
        ...
    except GatewayError as e:
        print(f"Request failed: {e}")
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway client errors."""
    pass


class ConfigurationError(GatewayError):
    """Raised when the client configuration cannot be used (e.g. no token)."""
    pass


class NotConnectedError(GatewayError):
    """Raised when a request is attempted outside the CONNECTED state."""

    def __init__(self, message: str = "not connected"):
        super().__init__(message)


class RequestTimeoutError(GatewayError, TimeoutError):
    """Raised when no response arrives before the request deadline."""

    def __init__(self, message: str = "request timeout"):
        super().__init__(message)


class ProtocolError(GatewayError):
    """Raised when an inbound frame cannot be decoded."""
    pass


class RemoteError(GatewayError):
    """Raised when the gateway answers a request with ``ok: false``."""

    def __init__(self, message: str = "request failed", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class TransportError(GatewayError):
    """Raised on socket-level failures while writing to the gateway."""
    pass


class ReconnectingError(GatewayError):
    """Raised for requests still pending when the connection is reset."""

    def __init__(self, message: str = "reconnecting"):
        super().__init__(message)


__all__ = [
    "ConfigurationError",
    "GatewayError",
    "NotConnectedError",
    "ProtocolError",
    "ReconnectingError",
    "RemoteError",
    "RequestTimeoutError",
    "TransportError",
]
