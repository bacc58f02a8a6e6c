from __future__ import annotations

import logging
import sys
from typing import TextIO

from colorama import Fore, Style, init as colorama_init

from .relay import RelayReport

# stdout carries tunnel payload, so every human-facing line goes to stderr.
colorama_init(autoreset=True)
logger = logging.getLogger("connectpipe.status")

__all__ = [
    "humanize_bytes",
    "humanize_duration",
    "format_summary",
    "print_summary",
    "print_fatal",
]


_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def humanize_bytes(n: int) -> str:
    size = float(max(0, n))
    unit = 0
    while size >= 1024.0 and unit < len(_BYTE_UNITS) - 1:
        size /= 1024.0
        unit += 1
    if unit == 0:
        return f"{int(size)}B"
    return f"{size:.1f}{_BYTE_UNITS[unit]}"


def humanize_duration(seconds: float) -> str:
    total = int(round(max(0.0, seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def format_summary(report: RelayReport, target: str) -> str:
    return (
        f"{Fore.CYAN}tunnel{Style.RESET_ALL}={target} "
        f"| {Fore.GREEN}down{Style.RESET_ALL}={humanize_bytes(report.remote_to_local + report.leftover)} "
        f"| {Fore.YELLOW}up{Style.RESET_ALL}={humanize_bytes(report.local_to_remote)} "
        f"| {Fore.MAGENTA}dur{Style.RESET_ALL}={humanize_duration(report.duration)}"
    )


def print_summary(report: RelayReport, target: str, stream: TextIO | None = None) -> None:
    out = stream or sys.stderr
    print(format_summary(report, target), file=out, flush=True)


def print_fatal(message: str, stream: TextIO | None = None) -> None:
    out = stream or sys.stderr
    print(f"{Fore.RED}connectpipe: {message}{Style.RESET_ALL}", file=out, flush=True)
