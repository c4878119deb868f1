"""Guest process entry point.

Started by the host supervisor as:

    python -m httpworker.guest.bootstrap [permission flags] -- SOCKET KIND SCRIPT

The guest:
1. Installs the permission policy from its flags
2. Loads the handler script (inline source or a file URL)
3. Serves every request on the Unix socket through the handler
4. Stops accepting on SIGINT, finishes outstanding work and exits 0
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse, Response
from starlette.requests import Request
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketState

from ..worker.protocol import SCRIPT_KINDS, WarmupMarker
from .bridge import SwitchingProtocols, UpgradeBridge
from .decoder import decode_request
from .handler import GuestHandler, load_handler
from .permissions import GuestPermissions, add_permission_arguments

logger = logging.getLogger("httpworker.guest")

# Close code for a handshake the handler did not accept.
POLICY_VIOLATION = 1008

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class GuestServer(uvicorn.Server):
    """uvicorn server that reports when it listens and leaves signals to the guest."""

    def __init__(self, config: uvicorn.Config, on_started: Callable[[], Awaitable[None]]):
        super().__init__(config)
        self._on_started = on_started

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    async def startup(self, sockets: Optional[List[Any]] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            await self._on_started()


class ProxyEndpoint:
    """
    Catch-all HTTP endpoint that accepts every request method.

    Starlette leaves a route unrestricted by method when its endpoint is a
    plain ASGI callable, so WebDAV verbs and extension methods reach the
    handler the same way GET does.
    """

    def __init__(self, handler: GuestHandler):
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        guest_request = decode_request(request.scope, request.receive)
        if guest_request is None:
            response: Response = JSONResponse(WarmupMarker().model_dump())
        else:
            response = await self.handler.dispatch(guest_request)
        await response(scope, receive, send)


class GuestWorker:
    """
    The guest's HTTP server.

    Requests with the true-URL control header are rebuilt and passed to the
    handler; requests without it are warm-up requests and never reach it.
    """

    def __init__(self, socket_path: str, handler: GuestHandler):
        self.socket_path = socket_path
        self.handler = handler
        self.bridge = UpgradeBridge()

        self.app = FastAPI(
            title="httpworker guest",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        self.app.state.upgrade_bridge = self.bridge
        self._server: Optional[GuestServer] = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Register the catch-all HTTP and WebSocket routes."""

        self.app.add_route("/{path:path}", ProxyEndpoint(self.handler), include_in_schema=False)

        @self.app.websocket("/{path:path}")
        async def proxy_websocket(websocket: WebSocket) -> None:
            guest_request = decode_request(websocket.scope)
            if guest_request is None:
                await websocket.close(code=POLICY_VIOLATION)
                return

            token = self.bridge.retain(guest_request, websocket)
            try:
                response = await self.handler.dispatch(guest_request)
                if websocket.application_state == WebSocketState.CONNECTING:
                    await self._deny(websocket, response)
            finally:
                self.bridge.release(token)
                await self._close(websocket)

    async def _deny(self, websocket: WebSocket, response: Response) -> None:
        """Answer a handshake the handler did not accept."""
        extensions: Dict[str, Any] = websocket.scope.get("extensions") or {}
        if isinstance(response, SwitchingProtocols) or "websocket.http.response" not in extensions:
            await websocket.close(code=POLICY_VIOLATION)
            return
        await websocket.send_denial_response(response)

    async def _close(self, websocket: WebSocket) -> None:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        if websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"WebSocket close after fetch failed: {e}")

    async def _on_started(self) -> None:
        logger.info(f"Guest listening on {self.socket_path}")
        try:
            await self.handler.listen(self.socket_path)
        except Exception as e:
            logger.error(f"on_listen failed: {e}", exc_info=True)

    def _request_shutdown(self) -> None:
        if self._server is not None and not self._server.should_exit:
            logger.info("Shutdown requested, finishing outstanding requests")
            self._server.should_exit = True

    def _report_unhandled(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        message = context.get("message", "Unhandled error in event loop")
        logger.error(f"{message}: {error!r}" if error else message, exc_info=error)

    async def _drain_background_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in asyncio.all_tasks() if task is not current]
        if not pending:
            return
        logger.info(f"Waiting for {len(pending)} background task(s)")
        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Background task failed: {result!r}", exc_info=result)

    async def serve(self) -> int:
        """
        Serve until asked to stop.

        Returns:
            Exit code (0 after a graceful shutdown)
        """
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._report_unhandled)

        config = uvicorn.Config(
            self.app,
            uds=self.socket_path,
            http="h11",
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
            server_header=False,
            date_header=False,
        )
        self._server = GuestServer(config, on_started=self._on_started)

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown)

        await self._server.serve()
        await self._drain_background_tasks()
        logger.info("Guest stopped")
        return 0

    def run(self) -> int:
        return asyncio.run(self.serve())


def _log_thread_error(args: threading.ExceptHookArgs) -> None:
    logger.error(
        f"Unhandled error in thread {args.thread.name if args.thread else '?'}: {args.exc_value!r}",
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="httpworker.guest.bootstrap",
        description="Serve an HTTP handler script on a Unix socket",
        allow_abbrev=False,
    )
    add_permission_arguments(parser)
    parser.add_argument("socket_path", help="Unix socket to listen on")
    parser.add_argument("script_kind", choices=SCRIPT_KINDS, help="How to load the script")
    parser.add_argument("script", help="Inline source, or a file URL")
    return parser.parse_args(argv)


def main(argv: List[str]) -> int:
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, stream=sys.stderr)
    threading.excepthook = _log_thread_error

    GuestPermissions.from_args(args).install()

    handler = load_handler(args.script_kind, args.script)
    if handler is None:
        return 1

    return GuestWorker(args.socket_path, handler).run()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
