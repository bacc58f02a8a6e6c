from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

from .config import TunnelConfig
from .credentials import CredentialSource, file_credentials, load_credential
from .handshake import TunnelRequest, handshake
from .relay import RelayReport, relay
from .streams import ReadHalf, WriteHalf, open_console, open_proxy_connection

logger = logging.getLogger("connectpipe.orchestrator")

ConsoleFactory = Callable[[], Awaitable[Tuple[ReadHalf, WriteHalf]]]


async def run_tunnel(
    cfg: TunnelConfig,
    credentials: Optional[CredentialSource] = None,
    console: Optional[ConsoleFactory] = None,
) -> RelayReport:
    """
    One tunnel session: dial the proxy, CONNECT, flush leftover, relay.

    ``credentials`` defaults to reading ``cfg.auth_file`` when one is set.
    ``console`` opens the local read/write halves (stdin/stdout by default).
    Every failure propagates; there is no retry at any stage.
    """
    if credentials is None and cfg.auth_file:
        credentials = file_credentials(cfg.auth_file)
    # Credentials and request validation happen before any network activity
    request = TunnelRequest(cfg.dest_host, cfg.dest_port, load_credential(credentials))

    t0 = time.monotonic()
    remote_r, remote_w = await open_proxy_connection(cfg.proxy_host, cfg.proxy_port)
    try:
        outcome = await handshake(remote_r, remote_w, request)
        hs_ms = (time.monotonic() - t0) * 1000.0
        logger.info(
            "connect: target=%s via=%s:%s status=%s leftover=%d hs_ms=%.0f",
            request.target, cfg.proxy_host, cfg.proxy_port, outcome.status, len(outcome.leftover), hs_ms,
        )

        local_r, local_w = await (console or open_console)()
        try:
            return await relay(
                (remote_r, remote_w),
                (local_r, local_w),
                leftover=outcome.leftover,
                half_close=cfg.half_close,
            )
        finally:
            await local_w.close()
    finally:
        await remote_w.close()
