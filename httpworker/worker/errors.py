"""Errors raised by the worker supervisor."""

from __future__ import annotations


class HTTPWorkerError(Exception):
    """Base class for worker errors."""


class EarlyExitError(HTTPWorkerError):
    """The guest process exited before its socket became ready."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        signal: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.signal = signal

    def __str__(self) -> str:
        details = f"{self.message}: code: {self.exit_code}, signal: {self.signal or None}"
        if self.stderr:
            details += f"\n{self.stderr}"
        return details


class WorkerTerminatedError(HTTPWorkerError):
    """A request was issued to a worker that has already been terminated."""
