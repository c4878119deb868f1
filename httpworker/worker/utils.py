"""Utility functions for guest process management."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
import uuid
from pathlib import Path
from typing import Optional

from .protocol import SOCKET_SUFFIX, ExitRecord
from ..config import get_output_limit, get_socket_dir

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("httpworker.guest_output")


def make_socket_path(socket_dir: Optional[Path] = None) -> str:
    """Build a unique socket path so many workers can coexist."""
    directory = Path(socket_dir) if socket_dir is not None else get_socket_dir()
    return str(directory.resolve() / f"{uuid.uuid4()}{SOCKET_SUFFIX}")


def get_python_for_env(env_name: Optional[str]) -> str:
    """
    Get Python interpreter path for a virtual environment.

    Args:
        env_name: Virtual environment name (e.g., "guest" for .venv-guest)
                  If None, returns the current interpreter.

    Returns:
        Path to Python interpreter
    """
    if not env_name:
        return sys.executable

    # Try .venv-{env_name}/bin/python
    env_path = Path(f".venv-{env_name}/bin/python")
    if env_path.exists():
        return str(env_path.resolve())

    # Fall back to main env
    return sys.executable


def exit_record_from_returncode(returncode: int) -> ExitRecord:
    """
    Convert an asyncio return code into an ExitRecord.

    A negative return code -N means the process was killed by signal N and is
    reported as exit code 128 + N, the way shells report it.
    """
    if returncode >= 0:
        return ExitRecord(exit_code=returncode, signal="")

    signum = -returncode
    try:
        name = signal.Signals(signum).name
    except ValueError:
        name = f"SIG{signum}"
    return ExitRecord(exit_code=128 + signum, signal=name)


def force_kill(process: asyncio.subprocess.Process) -> None:
    """
    Send SIGKILL to a process that has not exited yet.

    A process that is already gone is fine. Other OS errors are logged and
    not raised.
    """
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Failed to kill guest process {process.pid}: {e}")


def remove_socket_file(socket_path: str) -> None:
    """Best-effort removal of a socket file."""
    try:
        os.remove(socket_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove socket file {socket_path}: {e}")


class OutputCapture:
    """
    Drains one guest output pipe and keeps the recent text.

    Usage:
        capture = OutputCapture("stderr")
        capture.start(process.stderr)
        ...
        await capture.wait_for("ready")
        print(capture.text())
    """

    def __init__(self, name: str, print_output: bool = False, limit: Optional[int] = None):
        """
        Initialize output capture.

        Args:
            name: Stream name used in forwarded log lines
            print_output: Forward complete lines to the guest output logger
            limit: Characters to keep (default from config)
        """
        self.name = name
        self.print_output = print_output
        self.limit = limit or get_output_limit()

        self._text = ""
        self._partial_line = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._changed = asyncio.Condition()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the pipe reached EOF."""
        return self._closed

    def text(self) -> str:
        """Captured text so far."""
        return self._text

    def start(self, stream: Optional[asyncio.StreamReader]) -> None:
        """Start draining ``stream`` in a background task."""
        if stream is None:
            self._closed = True
            return
        self._task = asyncio.create_task(self._pump(stream))

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        """Wait until the pipe reaches EOF, at most ``timeout`` seconds."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Guest {self.name} still open after {timeout}s")

    async def wait_for(self, needle: str, timeout: Optional[float] = None) -> str:
        """
        Wait until ``needle`` shows up in the captured text.

        Raises:
            asyncio.TimeoutError: If it does not show up in time
            EOFError: If the stream closed without it
        """

        async def _wait() -> str:
            async with self._changed:
                await self._changed.wait_for(lambda: needle in self._text or self._closed)
            if needle not in self._text:
                raise EOFError(f"guest {self.name} closed without {needle!r}")
            return self._text

        return await asyncio.wait_for(_wait(), timeout)

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                self._append(self._decoder.decode(chunk))
                async with self._changed:
                    self._changed.notify_all()
            self._append(self._decoder.decode(b"", final=True))
            if self._partial_line:
                self._forward(self._partial_line)
                self._partial_line = ""
        finally:
            self._closed = True
            async with self._changed:
                self._changed.notify_all()

    def _append(self, text: str) -> None:
        if not text:
            return
        self._text = (self._text + text)[-self.limit:]
        if not self.print_output:
            return
        lines = (self._partial_line + text).split("\n")
        self._partial_line = lines.pop()
        for line in lines:
            self._forward(line)

    def _forward(self, line: str) -> None:
        if self.print_output:
            output_logger.info(f"[guest] {line.rstrip()}")
