"""SDK-wide constants shared by the client modules."""

SDK_VERSION = "0.1.0"

# Gateway wire protocol implemented by this client (min == max).
PROTOCOL_VERSION = 3
