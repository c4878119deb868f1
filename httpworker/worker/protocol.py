"""Shared constants and models for the host/guest proxy protocol.

The host talks to the guest over a Unix socket. Every request is sent to a
fixed synthetic origin; the target the caller actually asked for travels in
protocol-control headers:

- x-httpworker-url        -> the true request URL
- x-httpworker-host       -> the caller's ``host`` header, if any
- x-httpworker-connection -> the caller's ``connection`` header, if any

A request without the URL header is a warm-up request and is answered by the
guest bootstrap without reaching application code.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

URL_HEADER = "x-httpworker-url"
HOST_HEADER = "x-httpworker-host"
CONNECTION_HEADER = "x-httpworker-connection"

CONTROL_HEADERS: Tuple[str, ...] = (URL_HEADER, HOST_HEADER, CONNECTION_HEADER)

SYNTHETIC_HOST = "httpworker"
SYNTHETIC_ORIGIN = f"http://{SYNTHETIC_HOST}"

SCRIPT_KIND_SCRIPT = "script"
SCRIPT_KIND_IMPORT = "import"
SCRIPT_KINDS = (SCRIPT_KIND_SCRIPT, SCRIPT_KIND_IMPORT)

SOCKET_SUFFIX = "-httpworker.sock"

DEFAULT_BOOTSTRAP_MODULE = "httpworker.guest.bootstrap"

HeaderInput = Union[Mapping[str, str], Sequence[Tuple[str, str]]]
BodyInput = Union[str, bytes, AsyncIterable[bytes]]


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    SPAWNING = "spawning"  # Process spawned, socket not there yet
    READY = "ready"  # Socket exists, warm-up pending
    RUNNING = "running"  # Warm-up done, serving requests
    SHUTDOWN_REQUESTED = "shutdown_requested"  # SIGINT sent, waiting for exit
    TERMINATED = "terminated"  # Resources released


class WarmupMarker(BaseModel):
    """Body of the guest's answer to a warm-up request."""

    warming: bool = Field(True, description="Always true for a warm-up answer")


@dataclass(frozen=True)
class ExitRecord:
    """Final status of a guest process."""

    exit_code: int
    signal: str = ""


@dataclass
class RequestEnvelope:
    """One outbound application request, before protocol encoding."""

    url: str
    method: str = "GET"
    headers: Optional[HeaderInput] = None
    body: Optional[BodyInput] = None
