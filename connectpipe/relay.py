from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Tuple

from .errors import TransportError
from .streams import ReadHalf, WriteHalf

logger = logging.getLogger("connectpipe.relay")

__all__ = ["CHUNK_SIZE", "RelayReport", "pump", "flush_leftover", "relay"]

CHUNK_SIZE = 4096


@dataclass(frozen=True)
class RelayReport:
    remote_to_local: int = 0
    local_to_remote: int = 0
    leftover: int = 0
    duration: float = 0.0


async def pump(src: ReadHalf, dst: WriteHalf, name: str = "pump", bufsize: int = CHUNK_SIZE) -> int:
    """
    Copy ``src`` to ``dst`` until end-of-stream.

    Each chunk is written and flushed before the next read. A sink that accepts
    zero bytes ends the direction like EOF does. Returns bytes moved.
    """
    total = 0
    while True:
        try:
            chunk = await src.read(bufsize)
        except OSError as e:
            raise TransportError(f"{name}: cannot read source: {e}") from e
        if not chunk:
            logger.debug("%s: source eof after %d bytes", name, total)
            break
        try:
            written = await dst.write(chunk)
            if written == 0:
                logger.debug("%s: target closed after %d bytes", name, total)
                break
            await dst.flush()
        except OSError as e:
            raise TransportError(f"{name}: cannot write target: {e}") from e
        total += written
    return total


async def flush_leftover(dst: WriteHalf, leftover: bytes) -> None:
    if not leftover:
        return
    try:
        written = await dst.write(leftover)
        if written != len(leftover):
            raise TransportError("local output closed before handshake leftover was delivered")
        await dst.flush()
    except OSError as e:
        raise TransportError(f"cannot write handshake leftover to local output: {e}") from e
    logger.debug("flushed %d leftover bytes to local output", len(leftover))


async def relay(
    remote: Tuple[ReadHalf, WriteHalf],
    local: Tuple[ReadHalf, WriteHalf],
    leftover: bytes = b"",
    half_close: bool = False,
    bufsize: int = CHUNK_SIZE,
) -> RelayReport:
    """
    Relay both directions until each has seen end-of-stream on its own.

    Leftover handshake bytes go to local output first. One direction closing
    never stops the other; an error in either cancels its peer and propagates.
    """
    remote_r, remote_w = remote
    local_r, local_w = local
    t0 = time.monotonic()

    await flush_leftover(local_w, leftover)

    async def upstream() -> int:
        n = await pump(local_r, remote_w, name="local->remote", bufsize=bufsize)
        if half_close:
            try:
                await remote_w.shutdown()
            except OSError as e:
                raise TransportError(f"local->remote: cannot half-close remote: {e}") from e
            logger.debug("local->remote: sent eof to remote")
        return n

    t_down = asyncio.create_task(pump(remote_r, local_w, name="remote->local", bufsize=bufsize))
    t_up = asyncio.create_task(upstream())
    try:
        down, up = await asyncio.gather(t_down, t_up)
    except BaseException:
        for t in (t_down, t_up):
            if not t.done():
                t.cancel()
        await asyncio.gather(t_down, t_up, return_exceptions=True)
        raise

    report = RelayReport(
        remote_to_local=down,
        local_to_remote=up,
        leftover=len(leftover),
        duration=time.monotonic() - t0,
    )
    logger.info(
        "relay closed: remote->local=%d local->remote=%d leftover=%d dur_ms=%.0f",
        report.remote_to_local, report.local_to_remote, report.leftover, report.duration * 1000.0,
    )
    return report
