import asyncio
import os
import socket
import sys

import pytest

from connectpipe.errors import TransportError
from connectpipe.streams import (
    StreamReadHalf,
    StreamWriteHalf,
    ThreadReadHalf,
    ThreadWriteHalf,
    open_console,
    open_proxy_connection,
    split_stream,
)

unix_only = pytest.mark.skipif(sys.platform == "win32", reason="pipe transports are POSIX only")


def _free_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.mark.asyncio
async def test_thread_halves_over_os_pipe():
    r_fd, w_fd = os.pipe()
    try:
        src = ThreadReadHalf(r_fd)
        dst = ThreadWriteHalf(w_fd)
        assert await dst.write(b"hello") == 5
        await dst.flush()
        assert await src.read(4096) == b"hello"
    finally:
        os.close(r_fd)
        os.close(w_fd)


@pytest.mark.asyncio
async def test_thread_read_half_eof():
    r_fd, w_fd = os.pipe()
    os.close(w_fd)
    try:
        assert await ThreadReadHalf(r_fd).read(10) == b""
    finally:
        os.close(r_fd)


@pytest.mark.asyncio
async def test_stream_write_half_reports_zero_once_closing():
    a, b = socket.socketpair()
    try:
        _, w = await asyncio.open_connection(sock=a)
        half = StreamWriteHalf(w)
        assert await half.write(b"x") == 1
        await half.flush()
        await half.close()
        assert await half.write(b"y") == 0
    finally:
        b.close()


@pytest.mark.asyncio
async def test_split_stream_halves_share_one_socket():
    a, b = socket.socketpair()
    try:
        r, w = await asyncio.open_connection(sock=a)
        src, dst = split_stream(r, w)
        assert isinstance(src, StreamReadHalf)
        assert isinstance(dst, StreamWriteHalf)
        b.sendall(b"ping")
        assert await src.read(10) == b"ping"
        await dst.write(b"pong")
        await dst.flush()
        assert b.recv(10) == b"pong"
        await dst.close()
    finally:
        b.close()


@pytest.mark.asyncio
async def test_open_proxy_connection_refused():
    with pytest.raises(TransportError) as ei:
        await open_proxy_connection("127.0.0.1", _free_port())
    assert "cannot connect to proxy" in str(ei.value)


@unix_only
@pytest.mark.asyncio
async def test_open_console_uses_pipe_transports_for_pipes():
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    try:
        src, dst = await open_console(in_r, out_w)
        assert isinstance(src, StreamReadHalf)
        assert isinstance(dst, StreamWriteHalf)

        os.write(in_w, b"typed")
        assert await src.read(100) == b"typed"
        os.close(in_w)
        in_w = -1
        assert await src.read(100) == b""

        assert await dst.write(b"shown") == 5
        await dst.flush()
        assert os.read(out_r, 100) == b"shown"
        await dst.close()
    finally:
        for fd in (in_r, in_w, out_r, out_w):
            if fd >= 0:
                os.close(fd)


@pytest.mark.asyncio
async def test_open_console_falls_back_to_threads_for_files(tmp_path):
    path = tmp_path / "input.bin"
    path.write_bytes(b"file-input")
    in_fd = os.open(str(path), os.O_RDONLY)
    out_fd = os.open(str(tmp_path / "out.bin"), os.O_WRONLY | os.O_CREAT)
    try:
        src, dst = await open_console(in_fd, out_fd)
        assert isinstance(src, ThreadReadHalf)
        assert isinstance(dst, ThreadWriteHalf)
        assert await src.read(100) == b"file-input"
        assert await src.read(100) == b""
        assert await dst.write(b"out") == 3
    finally:
        os.close(in_fd)
        os.close(out_fd)
    assert (tmp_path / "out.bin").read_bytes() == b"out"


@unix_only
@pytest.mark.asyncio
async def test_open_console_on_one_shared_socket():
    a, b = socket.socketpair()
    in_fd = os.dup(a.fileno())
    out_fd = os.dup(a.fileno())
    b.settimeout(5.0)
    try:
        src, dst = await open_console(in_fd, out_fd)
        assert isinstance(src, StreamReadHalf)
        assert isinstance(dst, StreamWriteHalf)

        b.sendall(b"client-hello")
        assert await src.read(100) == b"client-hello"
        assert await dst.write(b"server-hello") == 12
        await dst.flush()
        assert b.recv(100) == b"server-hello"

        # Incoming bytes never close the output side
        b.sendall(b"more")
        assert await src.read(100) == b"more"
        assert await dst.write(b"again") == 5
        await dst.flush()
        assert b.recv(100) == b"again"

        b.shutdown(socket.SHUT_WR)
        assert await src.read(100) == b""
        assert await dst.write(b"after-eof") == 9
        await dst.flush()
        assert b.recv(100) == b"after-eof"
        await dst.close()
        # The caller's descriptors stay open
        os.fstat(in_fd)
        os.fstat(out_fd)
    finally:
        os.close(in_fd)
        os.close(out_fd)
        a.close()
        b.close()


@unix_only
@pytest.mark.asyncio
async def test_open_console_output_only_socket_uses_thread(tmp_path):
    path = tmp_path / "input.bin"
    path.write_bytes(b"")
    in_fd = os.open(str(path), os.O_RDONLY)
    a, b = socket.socketpair()
    b.settimeout(5.0)
    try:
        _, dst = await open_console(in_fd, a.fileno())
        assert isinstance(dst, ThreadWriteHalf)
        b.sendall(b"noise")
        assert await dst.write(b"shown") == 5
        assert b.recv(100) == b"shown"
    finally:
        os.close(in_fd)
        a.close()
        b.close()
