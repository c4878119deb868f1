"""Host side of the guest HTTP worker.

This module runs untrusted HTTP handler code in a separate guest process and
exposes it to the host as a local object:
- The guest is reachable only through a per-worker Unix socket
- Its permission flags grant exactly what the socket protocol needs
- Requests carry their true URL in protocol-control headers
- Termination and exit notification happen exactly once

Key components:
- supervisor: launch_worker() and WorkerOptions
- handle: WorkerHandle, the running worker
- proxy: request encoding for the socket hop
- flags: permission flag editing
- protocol: shared constants and models
"""

from .errors import EarlyExitError, HTTPWorkerError, WorkerTerminatedError
from .flags import build_run_flags
from .handle import WorkerHandle
from .protocol import ExitRecord, RequestEnvelope, WorkerState
from .supervisor import WorkerOptions, launch_worker

__all__ = [
    "launch_worker",
    "WorkerOptions",
    "WorkerHandle",
    "WorkerState",
    "ExitRecord",
    "RequestEnvelope",
    "build_run_flags",
    "HTTPWorkerError",
    "EarlyExitError",
    "WorkerTerminatedError",
]
