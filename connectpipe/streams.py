from __future__ import annotations

import asyncio
import logging
import os
import socket
import stat
import sys
import threading
from typing import Any, Callable, Optional, Protocol, Tuple

from .errors import TransportError

# Single-capability stream halves. A duplex connection (proxy socket, local
# console) is split once into a read half and a write half; each half is then
# owned by exactly one relay direction.
#
# Halves raise raw OSError; callers translate into TransportError with the
# context they know about (which direction, which phase).

logger = logging.getLogger("connectpipe.streams")

__all__ = [
    "ReadHalf",
    "WriteHalf",
    "StreamReadHalf",
    "StreamWriteHalf",
    "ThreadReadHalf",
    "ThreadWriteHalf",
    "split_stream",
    "open_proxy_connection",
    "open_console",
]


class ReadHalf(Protocol):
    async def read(self, n: int) -> bytes:
        """Read up to ``n`` bytes; ``b""`` means end-of-stream."""
        ...


class WriteHalf(Protocol):
    async def write(self, data: bytes) -> int:
        """Write all of ``data``; returns bytes accepted, 0 if the sink is gone."""
        ...

    async def flush(self) -> None:
        ...

    async def shutdown(self) -> None:
        """Signal end-of-stream to the peer without tearing down the read side."""
        ...

    async def close(self) -> None:
        ...


class StreamReadHalf:
    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader

    async def read(self, n: int) -> bytes:
        return await self._reader.read(n)


class StreamWriteHalf:
    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    async def write(self, data: bytes) -> int:
        if self._writer.is_closing():
            return 0
        self._writer.write(data)
        return len(data)

    async def flush(self) -> None:
        await self._writer.drain()

    async def shutdown(self) -> None:
        w = self._writer
        if w.is_closing() or not w.can_write_eof():
            return
        w.write_eof()

    async def close(self) -> None:
        w = self._writer
        if not w.is_closing():
            w.close()
        try:
            await w.wait_closed()
        except OSError:
            # Peer already gone; nothing left to release
            pass


def _call_in_thread(fn: Callable[..., Any], *args: Any, name: str) -> "asyncio.Future[Any]":
    """
    Run a blocking call on a daemon thread and return a future for its result.

    A read still blocked on the console never holds up interpreter exit.
    """
    loop = asyncio.get_running_loop()
    fut: asyncio.Future[Any] = loop.create_future()

    def _settle(value: Any, failed: bool) -> None:
        if fut.done():
            return
        if failed:
            fut.set_exception(value)
        else:
            fut.set_result(value)

    def _work() -> None:
        try:
            res, failed = fn(*args), False
        except OSError as e:
            res, failed = e, True
        try:
            loop.call_soon_threadsafe(_settle, res, failed)
        except RuntimeError:
            # Loop already closed; nobody is waiting for this result
            pass

    threading.Thread(target=_work, name=name, daemon=True).start()
    return fut


class ThreadReadHalf:
    """Blocking file descriptor read, one daemon thread per call."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    async def read(self, n: int) -> bytes:
        return await _call_in_thread(os.read, self.fd, n, name="console-read")


class ThreadWriteHalf:
    def __init__(self, fd: int) -> None:
        self.fd = fd

    def _write_all(self, data: bytes) -> int:
        view = memoryview(data)
        total = 0
        while total < len(view):
            n = os.write(self.fd, view[total:])
            if n == 0:
                break
            total += n
        return total

    async def write(self, data: bytes) -> int:
        return await _call_in_thread(self._write_all, bytes(data), name="console-write")

    async def flush(self) -> None:
        # os.write is unbuffered
        return None

    async def shutdown(self) -> None:
        return None

    async def close(self) -> None:
        # The descriptor belongs to the process, never closed here
        return None


def split_stream(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Tuple[StreamReadHalf, StreamWriteHalf]:
    return StreamReadHalf(reader), StreamWriteHalf(writer)


async def open_proxy_connection(host: str, port: int) -> Tuple[StreamReadHalf, StreamWriteHalf]:
    try:
        r, w = await asyncio.open_connection(host=host, port=port)
    except OSError as e:
        raise TransportError(f"cannot connect to proxy {host}:{port}: {e}") from e
    logger.debug("connected to proxy %s:%s peer=%s", host, port, w.get_extra_info("peername"))
    return split_stream(r, w)


def _fd_kind(fd: int) -> Optional[os.stat_result]:
    try:
        return os.fstat(fd)
    except OSError:
        return None


def _is_fifo(st: Optional[os.stat_result]) -> bool:
    return st is not None and stat.S_ISFIFO(st.st_mode)


def _is_socket(st: Optional[os.stat_result]) -> bool:
    return st is not None and stat.S_ISSOCK(st.st_mode)


def _same_file(a: Optional[os.stat_result], b: Optional[os.stat_result]) -> bool:
    return a is not None and b is not None and (a.st_dev, a.st_ino) == (b.st_dev, b.st_ino)


async def _open_pipe_reader(fd: int) -> StreamReadHalf:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    pipe = os.fdopen(fd, "rb", buffering=0, closefd=False)
    await loop.connect_read_pipe(lambda: protocol, pipe)
    return StreamReadHalf(reader)


async def _open_pipe_writer(fd: int) -> StreamWriteHalf:
    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "wb", buffering=0, closefd=False)
    # StreamReaderProtocol gives the writer drain() flow control and a close waiter
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    transport, _ = await loop.connect_write_pipe(lambda: protocol, pipe)
    return StreamWriteHalf(asyncio.StreamWriter(transport, protocol, reader, loop))


async def _open_socket_console(fd: int) -> Tuple[StreamReadHalf, StreamWriteHalf]:
    # Own a duplicate so closing the transport leaves the process's fd alone
    sock = socket.socket(fileno=os.dup(fd))
    try:
        r, w = await asyncio.open_connection(sock=sock)
    except BaseException:
        sock.close()
        raise
    return split_stream(r, w)


async def open_console(in_fd: Optional[int] = None, out_fd: Optional[int] = None) -> Tuple[ReadHalf, WriteHalf]:
    """
    Split the local console into a read half (stdin) and a write half (stdout).

    stdin and stdout on one socket (inetd, socat, socketpair ProxyCommand) become
    a single socket stream. FIFOs get asyncio pipe transports, and a socket on
    stdin alone gets a read pipe transport. Anything else (terminals, regular
    files, an output-only socket, Windows handles) falls back to blocking calls
    on daemon threads, so a non-blocking flag never leaks onto a shared terminal.
    """
    try:
        if in_fd is None:
            in_fd = sys.stdin.fileno()
        if out_fd is None:
            out_fd = sys.stdout.fileno()
    except (OSError, ValueError) as e:
        raise TransportError(f"local console has no usable stdin/stdout: {e}") from e

    src: ReadHalf = ThreadReadHalf(in_fd)
    dst: WriteHalf = ThreadWriteHalf(out_fd)
    if sys.platform == "win32":
        logger.debug("console: using threads")
        return src, dst

    in_st = _fd_kind(in_fd)
    out_st = _fd_kind(out_fd)
    if _is_socket(in_st) and _same_file(in_st, out_st):
        try:
            src, dst = await _open_socket_console(in_fd)
        except (ValueError, OSError) as e:
            logger.debug("console: socket stream unavailable (%s); using threads", e)
        logger.debug("console: shared socket stdin=%s stdout=%s", type(src).__name__, type(dst).__name__)
        return src, dst

    if _is_fifo(in_st) or _is_socket(in_st):
        try:
            src = await _open_pipe_reader(in_fd)
        except (ValueError, NotImplementedError, OSError) as e:
            logger.debug("console: stdin pipe transport unavailable (%s); using thread", e)
    # A write pipe transport reads "readable" as "peer closed", so only FIFOs get one
    if _is_fifo(out_st):
        try:
            dst = await _open_pipe_writer(out_fd)
        except (ValueError, NotImplementedError, OSError) as e:
            logger.debug("console: stdout pipe transport unavailable (%s); using thread", e)
    logger.debug("console: stdin=%s stdout=%s", type(src).__name__, type(dst).__name__)
    return src, dst
