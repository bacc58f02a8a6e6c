from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from . import __version__
from .config import ENV_PREFIX, load_config_from_env
from .errors import TunnelError
from .orchestrator import run_tunnel
from .status import print_fatal, print_summary

logger = logging.getLogger("connectpipe.main")

USAGE = "connectpipe <proxyhost> <proxyport> <desthost> <destport> [authfile]"


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "WARNING").upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _parse_cli_args(argv: list[str] | None = None) -> tuple[argparse.Namespace, list[str]]:
    """
    Positional arguments mirror the classic ProxyCommand helper; flags override
    environment variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="connectpipe",
        usage=USAGE,
        description="Open an HTTP CONNECT tunnel through a proxy and relay stdin/stdout over it.",
    )
    ap.add_argument("positional", nargs="*", metavar="ARG", help="proxyhost proxyport desthost destport [authfile]")
    ap.add_argument("--log-level", dest="log_level", help=f"Override {ENV_PREFIX}LOG_LEVEL (default WARNING)")
    ap.add_argument("--half-close", dest="half_close", action="store_const", const="1",
                    help=f"Send EOF to the remote when stdin ends (env {ENV_PREFIX}HALF_CLOSE)")
    ap.add_argument("--summary", dest="summary", action="store_const", const="1",
                    help=f"Print a transfer summary to stderr on exit (env {ENV_PREFIX}SUMMARY)")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap.parse_known_args(argv)


def usage() -> None:
    print(f"connectpipe {__version__}\n")
    print(f"usage: {USAGE}\n")


def main(argv: list[str] | None = None) -> int:
    args, unknown = _parse_cli_args(argv)
    # An unrecognised flag is a usage error like a wrong argument count
    pos = list(args.positional or [])
    if unknown or len(pos) not in (4, 5):
        usage()
        return 0

    cli_to_env = {
        "PROXY_HOST": pos[0],
        "PROXY_PORT": pos[1],
        "DEST_HOST": pos[2],
        "DEST_PORT": pos[3],
        "AUTH_FILE": pos[4] if len(pos) == 5 else None,
        "LOG_LEVEL": args.log_level,
        "HALF_CLOSE": args.half_close,
        "SUMMARY": args.summary,
    }
    for key, val in cli_to_env.items():
        if val is not None:
            os.environ[ENV_PREFIX + key] = str(val)

    _setup_logging(os.environ.get(ENV_PREFIX + "LOG_LEVEL", "WARNING"))

    try:
        cfg = load_config_from_env()
        logger.debug(
            "config: proxy=%s:%d dest=%s:%d auth_file=%s half_close=%s",
            cfg.proxy_host, cfg.proxy_port, cfg.dest_host, cfg.dest_port, cfg.auth_file, cfg.half_close,
        )
        report = asyncio.run(run_tunnel(cfg))
    except TunnelError as e:
        logger.debug("fatal: %s", e, exc_info=True)
        print_fatal(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        return 130

    if cfg.summary:
        print_summary(report, f"{cfg.dest_host}:{cfg.dest_port}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
