from __future__ import annotations

from typing import Optional

__all__ = [
    "TunnelError",
    "ConfigurationError",
    "TransportError",
    "ProtocolError",
    "TooManyHeaders",
    "HandshakeRejected",
]


class TunnelError(Exception):
    """Base class for every fatal condition of a tunnel session."""

    exit_code = 1


class ConfigurationError(TunnelError):
    """Bad arguments, unparseable ports or an unreadable credential file."""

    exit_code = 2


class TransportError(TunnelError):
    """Connection, read, write or flush failure on any stream."""


class ProtocolError(TunnelError):
    """The proxy answered with something that is not an HTTP/1.x response head."""


class TooManyHeaders(ProtocolError):
    """Header block holds more entries than the parser was allowed to store."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"response has more than {limit} headers")
        self.limit = limit


class HandshakeRejected(TunnelError):
    def __init__(self, host: str, port: int, status: Optional[int] = None) -> None:
        msg = f"proxy could not open connection to {host}:{port}"
        if status is not None:
            msg += f" (status {status})"
        super().__init__(msg)
        self.host = host
        self.port = port
        self.status = status
