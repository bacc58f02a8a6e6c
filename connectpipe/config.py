from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigurationError
from .handshake import parse_port

ENV_PREFIX = "CONNECTPIPE_"


@dataclass(frozen=True)
class TunnelConfig:
    # Forward proxy to dial
    proxy_host: str
    proxy_port: int
    # Target the proxy should connect to
    dest_host: str
    dest_port: int
    # Optional file whose raw bytes become the Basic credential
    auth_file: str | None
    log_level: str
    # Send EOF to the remote once local input ends
    half_close: bool
    # Print a byte/duration summary to stderr on clean exit
    summary: bool


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(ENV_PREFIX + name, default)


def _flag(name: str, default: str = "0") -> bool:
    return (_env(name, default) or "").strip().lower() not in ("", "0", "false", "no", "off")


def _required(name: str, what: str) -> str:
    v = _env(name)
    if v is None or not v.strip():
        raise ConfigurationError(f"missing {what}")
    return v.strip()


def load_config_from_env() -> TunnelConfig:
    proxy_host = _required("PROXY_HOST", "proxy host")
    proxy_port = parse_port(_required("PROXY_PORT", "proxy port"), "proxy port")
    dest_host = _required("DEST_HOST", "destination host")
    dest_port = parse_port(_required("DEST_PORT", "destination port"), "destination port")
    auth_file = _env("AUTH_FILE") or None
    log_level = (_env("LOG_LEVEL", "WARNING") or "WARNING").strip().upper()
    half_close = _flag("HALF_CLOSE")
    summary = _flag("SUMMARY")

    return TunnelConfig(
        proxy_host=proxy_host,
        proxy_port=proxy_port,
        dest_host=dest_host,
        dest_port=dest_port,
        auth_file=auth_file,
        log_level=log_level,
        half_close=half_close,
        summary=summary,
    )
