"""HTTP CONNECT tunnel helper: stdin/stdout <-> proxy tunnel."""

__version__ = "0.3.0"

from .errors import (  # noqa: E402
    ConfigurationError,
    HandshakeRejected,
    ProtocolError,
    TransportError,
    TunnelError,
)
from .handshake import HandshakeOutcome, TunnelRequest, build_request, parse_response, read_response  # noqa: E402
from .relay import RelayReport, pump, relay  # noqa: E402

__all__ = [
    "__version__",
    "ConfigurationError",
    "HandshakeRejected",
    "ProtocolError",
    "TransportError",
    "TunnelError",
    "HandshakeOutcome",
    "TunnelRequest",
    "build_request",
    "parse_response",
    "read_response",
    "RelayReport",
    "pump",
    "relay",
]
