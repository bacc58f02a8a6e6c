from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from .errors import ConfigurationError, HandshakeRejected, ProtocolError, TooManyHeaders, TransportError
from .streams import ReadHalf, WriteHalf

# CONNECT handshake: request construction, incremental response accumulation,
# permissive HTTP/1.x response-head parsing and outcome classification.
#
# Bytes that arrive after the header terminator in the same reads are tunnel
# payload; they are handed back as ``leftover`` and never interpreted here.

logger = logging.getLogger("connectpipe.handshake")

__all__ = [
    "BUFFER_STEP",
    "HEADER_SLOT_STEP",
    "ACCEPT_STATUS_MAX",
    "TunnelRequest",
    "ParsedResponse",
    "ResponseBuffer",
    "HandshakeOutcome",
    "parse_port",
    "build_request",
    "send_request",
    "parse_response",
    "is_accepted",
    "read_response",
    "handshake",
]

BUFFER_STEP = 4096
HEADER_SLOT_STEP = 16
# Everything up to and including 407 counts as an open tunnel.
ACCEPT_STATUS_MAX = 407

_TOKEN_CHARS = frozenset(b"!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_VERSION_PREFIX = b"HTTP/1."


def parse_port(value: Union[str, int], what: str = "port") -> int:
    """Parse an unsigned 16-bit port; anything else is a configuration error."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid {what}: {value!r}")
    if isinstance(value, int):
        port = value
    else:
        s = str(value)
        digits = s[1:] if s.startswith("+") else s
        if not digits or not digits.isascii() or not digits.isdigit():
            raise ConfigurationError(f"invalid {what}: {value!r}")
        port = int(digits)
    if not 0 <= port <= 0xFFFF:
        raise ConfigurationError(f"invalid {what}: {value!r} (must be 0-65535)")
    return port


@dataclass(frozen=True)
class TunnelRequest:
    host: str
    port: int
    credential: Optional[bytes] = field(default=None, repr=False)
    # Host as it goes on the wire (UTF-8, unvalidated beyond line safety)
    host_bytes: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigurationError("destination host must not be empty")
        if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7F for c in self.host):
            raise ConfigurationError(f"invalid destination host: {self.host!r}")
        try:
            host_bytes = self.host.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ConfigurationError(f"destination host is not representable on the wire: {self.host!r}") from e
        object.__setattr__(self, "host_bytes", host_bytes)
        object.__setattr__(self, "port", parse_port(self.port, "destination port"))

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def auth_header_value(self) -> Optional[str]:
        if self.credential is None:
            return None
        token = base64.b64encode(self.credential).decode("ascii")
        return f"Basic {token}"

    def encode(self) -> bytes:
        lines = [b"CONNECT " + self.host_bytes + f":{self.port} HTTP/1.0".encode("ascii")]
        auth = self.auth_header_value()
        if auth:
            lines.append(f"Proxy-Authorization: {auth}".encode("ascii"))
        return b"\r\n".join(lines) + b"\r\n\r\n"


def build_request(host: str, port: Union[str, int], credential: Optional[bytes] = None) -> bytes:
    return TunnelRequest(host, port, credential).encode()  # type: ignore[arg-type]


async def send_request(sink: WriteHalf, request: bytes) -> None:
    try:
        n = await sink.write(request)
        if n != len(request):
            raise TransportError("cannot send connect request: proxy connection closed")
        await sink.flush()
    except OSError as e:
        raise TransportError(f"cannot send connect request: {e}") from e
    logger.debug("sent CONNECT request (%d bytes)", len(request))


@dataclass(frozen=True)
class ParsedResponse:
    offset: int
    status: Optional[int]
    reason: str = ""
    version: int = 1
    headers: Tuple[Tuple[str, str], ...] = ()


def _next_line(data: bytes, pos: int) -> Optional[Tuple[bytes, int]]:
    """
    Return (line without terminator, position after terminator) or None if the
    line is not terminated yet. A lone CR not followed by LF is malformed.
    """
    nl = data.find(b"\n", pos)
    if nl < 0:
        cr = data.find(b"\r", pos)
        if cr >= 0 and cr + 1 < len(data):
            raise ProtocolError("bare CR in response head")
        return None
    end = nl
    if end > pos and data[end - 1] == 0x0D:
        end -= 1
    line = data[pos:end]
    if b"\r" in line:
        raise ProtocolError("bare CR in response head")
    return line, nl + 1


def _parse_status_line(line: bytes) -> Tuple[int, Optional[int], str]:
    if not line.startswith(_VERSION_PREFIX) or len(line) < len(_VERSION_PREFIX) + 1:
        raise ProtocolError(f"bad status line: {line[:64]!r}")
    minor = line[len(_VERSION_PREFIX)]
    if not 0x30 <= minor <= 0x39:
        raise ProtocolError(f"bad HTTP version: {line[:16]!r}")
    rest = line[len(_VERSION_PREFIX) + 1:]
    if not rest:
        # Version only, no status code at all
        return minor - 0x30, None, ""
    if rest[:1] != b" ":
        raise ProtocolError(f"bad HTTP version: {line[:16]!r}")
    code_b = rest[1:4]
    if len(code_b) != 3 or not code_b.isdigit():
        raise ProtocolError(f"bad status code: {line[:64]!r}")
    tail = rest[4:]
    if tail and tail[:1] != b" ":
        raise ProtocolError(f"bad status code: {line[:64]!r}")
    reason_b = tail[1:]
    for b in reason_b:
        if b < 0x20 and b != 0x09 or b == 0x7F:
            raise ProtocolError("bad reason phrase")
    return minor - 0x30, int(code_b), reason_b.decode("latin1")


def _parse_header_line(line: bytes) -> Tuple[str, str]:
    colon = line.find(b":")
    if colon <= 0:
        raise ProtocolError(f"bad header line: {line[:64]!r}")
    name = line[:colon]
    if any(b not in _TOKEN_CHARS for b in name):
        raise ProtocolError(f"bad header name: {name[:64]!r}")
    value = line[colon + 1:].strip(b" \t")
    for b in value:
        if b < 0x20 and b != 0x09 or b == 0x7F:
            raise ProtocolError(f"bad header value for {name.decode('latin1')}")
    return name.decode("latin1"), value.decode("latin1")


def parse_response(data: bytes, max_headers: int = HEADER_SLOT_STEP) -> Optional[ParsedResponse]:
    """
    Parse an HTTP/1.x response head from the start of ``data``.

    Returns None while the head is incomplete, a ParsedResponse once the blank
    line has been seen. Raises TooManyHeaders when more than ``max_headers``
    header lines are present and ProtocolError for anything malformed. Data
    that cannot begin with ``HTTP/1.`` is rejected before the head completes.
    """
    pos = 0
    n = len(data)
    # Leading empty lines are tolerated
    while pos < n and data[pos] in (0x0D, 0x0A):
        if data[pos] == 0x0D:
            if pos + 1 >= n:
                return None
            if data[pos + 1] != 0x0A:
                raise ProtocolError("bare CR in response head")
            pos += 2
        else:
            pos += 1
    if pos >= n:
        return None

    head = data[pos:pos + len(_VERSION_PREFIX)]
    if not _VERSION_PREFIX.startswith(head):
        raise ProtocolError(f"not an HTTP response: {data[pos:pos + 16]!r}")

    got = _next_line(data, pos)
    if got is None:
        return None
    line, pos = got
    version, status, reason = _parse_status_line(line)

    headers: List[Tuple[str, str]] = []
    while True:
        got = _next_line(data, pos)
        if got is None:
            return None
        line, pos = got
        if not line:
            return ParsedResponse(offset=pos, status=status, reason=reason, version=version, headers=tuple(headers))
        if line[:1] in (b" ", b"\t"):
            raise ProtocolError("obsolete header folding is not supported")
        if len(headers) >= max_headers:
            raise TooManyHeaders(max_headers)
        headers.append(_parse_header_line(line))


def is_accepted(status: Optional[int]) -> bool:
    return status is not None and status <= ACCEPT_STATUS_MAX


class ResponseBuffer:
    """
    Accumulation state for the proxy's response head.

    The byte buffer only ever grows. Its logical capacity starts at one step and
    grows by one step exactly when it is full and still does not hold a complete
    head. The header slot count grows independently when the parser runs out of
    slots; growing it never touches the bytes.
    """

    def __init__(self, step: int = BUFFER_STEP, header_slots: int = HEADER_SLOT_STEP) -> None:
        self.data = bytearray()
        self.step = int(step)
        self.capacity = int(step)
        self.header_slots = int(header_slots)
        self.reads = 0

    def __len__(self) -> int:
        return len(self.data)

    @property
    def free(self) -> int:
        return self.capacity - len(self.data)

    def is_full(self) -> bool:
        return len(self.data) >= self.capacity

    def grow(self) -> None:
        self.capacity += self.step

    def append(self, chunk: bytes) -> None:
        self.data += chunk
        self.reads += 1

    def parse(self) -> Optional[ParsedResponse]:
        while True:
            try:
                return parse_response(bytes(self.data), self.header_slots)
            except TooManyHeaders:
                self.header_slots += HEADER_SLOT_STEP
                logger.debug("response head: growing header slots to %d", self.header_slots)

    def split(self, offset: int) -> Tuple[bytes, bytes]:
        return bytes(self.data[:offset]), bytes(self.data[offset:])


@dataclass(frozen=True)
class HandshakeOutcome:
    success: bool
    leftover: bytes = b""
    status: Optional[int] = None
    reason: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()


async def read_response(source: ReadHalf) -> HandshakeOutcome:
    buf = ResponseBuffer()
    while True:
        try:
            chunk = await source.read(buf.free)
        except OSError as e:
            raise TransportError(f"cannot read connect response: {e}") from e
        if not chunk:
            raise TransportError(f"proxy closed the connection before a complete response ({len(buf)} bytes received)")
        buf.append(chunk)

        parsed = buf.parse()
        if parsed is None:
            while buf.is_full():
                buf.grow()
            continue

        head, leftover = buf.split(parsed.offset)
        success = is_accepted(parsed.status)
        logger.debug(
            "response head complete: status=%s reason=%r headers=%d head_bytes=%d leftover=%d reads=%d",
            parsed.status, parsed.reason, len(parsed.headers), len(head), len(leftover), buf.reads,
        )
        return HandshakeOutcome(
            success=success,
            leftover=leftover,
            status=parsed.status,
            reason=parsed.reason,
            headers=parsed.headers,
        )


async def handshake(source: ReadHalf, sink: WriteHalf, request: TunnelRequest) -> HandshakeOutcome:
    """Send CONNECT for ``request`` and wait for the proxy's verdict."""
    await send_request(sink, request.encode())
    try:
        outcome = await read_response(source)
    except ProtocolError as e:
        raise ProtocolError(f"bad connect response for {request.target}: {e}") from e
    if not outcome.success:
        raise HandshakeRejected(request.host, request.port, outcome.status)
    logger.info("tunnel open to %s (status=%s %s)", request.target, outcome.status, outcome.reason)
    return outcome
