"""
Diagnostic output. Everything goes to stderr so that a trace written
to stdout (``-o -``) is never interleaved with messages.
"""

import sys
from datetime import datetime


def _timestamp() -> str:
    return datetime.now().strftime("[%H:%M:%S]")


def _emit(level: str, msg: str) -> None:
    print(f"{_timestamp()} [{level}] {msg}", file=sys.stderr, flush=True)


def log_info(msg: str) -> None:
    _emit("INFO", msg)


def log_warn(msg: str) -> None:
    _emit("WARN", msg)


def log_error(msg: str) -> None:
    _emit("ERROR", msg)
