"""Runtime configuration for socket placement, guest interpreter and polling."""

import os
import sys
import tempfile
from pathlib import Path


def get_socket_dir() -> Path:
    """
    Get the directory where worker sockets are created.

    Checks HTTPWORKER_SOCKET_DIR first, then TMPDIR, then falls back to the
    platform temp directory.
    """
    if env_socket_dir := os.getenv("HTTPWORKER_SOCKET_DIR"):
        return Path(env_socket_dir)

    if env_tmpdir := os.getenv("TMPDIR"):
        return Path(env_tmpdir)

    return Path(tempfile.gettempdir())


def get_guest_python() -> str:
    """
    Get the interpreter used to run guest processes.

    Priority order:
    1. Environment variable (HTTPWORKER_GUEST_PYTHON)
    2. The interpreter running the host
    """
    env_python = os.getenv("HTTPWORKER_GUEST_PYTHON")
    if env_python:
        return env_python

    return sys.executable


def get_ready_poll_interval() -> float:
    """
    Get the interval, in seconds, between socket existence checks.

    Invalid or non-positive values fall back to the default of 20ms.
    """
    default = 0.02
    raw = os.getenv("HTTPWORKER_READY_POLL_INTERVAL")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_output_limit() -> int:
    """Get how many characters of guest output are kept per stream."""
    default = 64 * 1024
    raw = os.getenv("HTTPWORKER_OUTPUT_LIMIT")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default
