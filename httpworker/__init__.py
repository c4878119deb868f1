"""Run untrusted HTTP handlers in an isolated guest process."""

from .worker import (
    EarlyExitError,
    ExitRecord,
    HTTPWorkerError,
    RequestEnvelope,
    WorkerHandle,
    WorkerOptions,
    WorkerState,
    WorkerTerminatedError,
    launch_worker,
)

__all__ = [
    "launch_worker",
    "WorkerOptions",
    "WorkerHandle",
    "WorkerState",
    "ExitRecord",
    "RequestEnvelope",
    "HTTPWorkerError",
    "EarlyExitError",
    "WorkerTerminatedError",
]
