"""WorkerHandle - the host's view of one running guest process.

Responsibilities:
- Proxy requests and WebSocket connections over the worker's socket
- Own the connection pool, the process and the socket file
- Run termination exactly once, whichever trigger gets there first
- Notify exit listeners with the final ExitRecord
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

import httpx
from websockets.asyncio.client import ClientConnection, unix_connect

from .errors import WorkerTerminatedError
from .protocol import (
    SYNTHETIC_HOST,
    BodyInput,
    ExitRecord,
    HeaderInput,
    RequestEnvelope,
    WarmupMarker,
    WorkerState,
)
from .proxy import build_request, build_warmup_request, encode_upgrade_headers
from .utils import OutputCapture, exit_record_from_returncode, force_kill, remove_socket_file

logger = logging.getLogger(__name__)

ExitListener = Callable[[int, str], None]


class WorkerHandle:
    """
    A running guest process and its communication channel.

    Created by launch_worker() once the guest socket exists. Termination is
    idempotent: the pool is closed, the process killed if still alive, the
    socket file removed and every exit listener called once.

    Usage:
        async with await launch_worker(source) as worker:
            response = await worker.request("https://example.com/")
    """

    def __init__(
        self,
        socket_path: str,
        process: asyncio.subprocess.Process,
        stdout: OutputCapture,
        stderr: OutputCapture,
    ):
        self._socket_path = socket_path
        self._process = process
        self._stdout = stdout
        self._stderr = stderr

        self._client = httpx.AsyncClient(
            transport=httpx.AsyncHTTPTransport(uds=socket_path),
            timeout=None,
        )
        self._state = WorkerState.READY
        self._terminated = False
        self._exit_listeners: List[ExitListener] = []
        self._exit_record: Optional[ExitRecord] = None
        self._closed = asyncio.Event()
        self._exit_observer: Optional[asyncio.Task] = None  # Set by the supervisor

    @property
    def socket_path(self) -> str:
        return self._socket_path

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def process(self) -> asyncio.subprocess.Process:
        return self._process

    @property
    def stdout(self) -> OutputCapture:
        """Captured guest stdout."""
        return self._stdout

    @property
    def stderr(self) -> OutputCapture:
        """Captured guest stderr."""
        return self._stderr

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def exit_record(self) -> Optional[ExitRecord]:
        """Final status, once termination has finished."""
        return self._exit_record

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Register ``listener(exit_code, signal)``, called once on exit."""
        self._exit_listeners.append(listener)

    async def __aenter__(self) -> WorkerHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.terminate()

    # -- requests ---------------------------------------------------------

    def _ensure_running(self) -> None:
        if self._terminated:
            raise WorkerTerminatedError(f"Worker {self.pid} has been terminated")

    async def send(self, envelope: RequestEnvelope, stream: bool = False) -> httpx.Response:
        """
        Send one envelope through the socket.

        Args:
            envelope: The application request
            stream: Leave the body unread; the caller must close the response

        Returns:
            The guest's response

        Raises:
            WorkerTerminatedError: If the worker is terminated
            httpx.TransportError: If the socket hop fails
        """
        self._ensure_running()
        return await self._client.send(build_request(envelope), stream=stream)

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[HeaderInput] = None,
        body: Optional[BodyInput] = None,
    ) -> httpx.Response:
        """Proxy a request to the guest and read the whole response."""
        return await self.send(RequestEnvelope(url=url, method=method, headers=headers, body=body))

    @asynccontextmanager
    async def stream(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[HeaderInput] = None,
        body: Optional[BodyInput] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Proxy a request and yield the response with its body unread."""
        envelope = RequestEnvelope(url=url, method=method, headers=headers, body=body)
        response = await self.send(envelope, stream=True)
        try:
            yield response
        finally:
            await response.aclose()

    @asynccontextmanager
    async def websocket(
        self, url: str, headers: Optional[HeaderInput] = None
    ) -> AsyncIterator[ClientConnection]:
        """
        Open a WebSocket to the guest.

        The handshake carries the same control headers as a plain request, so
        application code sees ``url`` and the caller's headers.
        """
        self._ensure_running()
        async with unix_connect(
            self._socket_path,
            uri=f"ws://{SYNTHETIC_HOST}/",
            additional_headers=encode_upgrade_headers(url, headers),
            user_agent_header=None,
        ) as connection:
            yield connection

    async def warm_up(self, retry_interval: float) -> None:
        """
        Send the warm-up request so the pool holds a live connection.

        The socket file can show up a moment before the guest accepts, so
        connection errors are retried while the process is alive.
        """
        while True:
            try:
                response = await self._client.send(build_warmup_request())
                break
            except httpx.ConnectError:
                if self._terminated or self._process.returncode is not None:
                    raise
                await asyncio.sleep(retry_interval)

        response.raise_for_status()
        WarmupMarker.model_validate(response.json())
        if self._state is WorkerState.READY:
            self._state = WorkerState.RUNNING

    # -- lifecycle --------------------------------------------------------

    async def terminate(self) -> None:
        """Force-kill the guest and release every resource, once."""
        await self._terminate()
        await self._closed.wait()

    async def shutdown(self) -> None:
        """
        Ask the guest to stop and wait for it to exit on its own.

        SIGINT lets the guest stop accepting connections and finish its
        outstanding work. The exit observer then runs the same termination
        routine as terminate(). Once termination has started this only waits
        for it to finish.
        """
        if self._terminated:
            await self._closed.wait()
            return
        self._state = WorkerState.SHUTDOWN_REQUESTED
        try:
            self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        await self._closed.wait()

    async def wait_terminated(self) -> ExitRecord:
        """Wait for termination to finish and return the final record."""
        await self._closed.wait()
        if self._exit_record is None:
            raise RuntimeError(f"Worker {self.pid} closed without an exit record")
        return self._exit_record

    async def _terminate(self, record: Optional[ExitRecord] = None) -> None:
        """
        Termination routine shared by terminate(), shutdown() and the exit observer.

        Args:
            record: Exit status observed by the exit observer, if that is the trigger
        """
        # Check-and-set with no await in between: only one caller gets past here.
        if self._terminated:
            return
        self._terminated = True

        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning(f"Error closing connection pool for worker {self.pid}: {e}")

        force_kill(self._process)

        if record is None:
            returncode = await self._process.wait()
            record = exit_record_from_returncode(returncode)

        remove_socket_file(self._socket_path)

        self._exit_record = record
        self._state = WorkerState.TERMINATED
        logger.info(
            f"Worker {self.pid} terminated (code: {record.exit_code}, signal: {record.signal or None})"
        )

        for listener in self._exit_listeners:
            try:
                listener(record.exit_code, record.signal)
            except Exception as e:
                logger.warning(f"Exit listener failed for worker {self.pid}: {e}", exc_info=True)

        self._closed.set()
