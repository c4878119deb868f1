"""Handler whose implementation is delivered by the first request.

A guest started with this module's ``handler`` accepts Python source as the
body of its first request and serves every later request with the handler
that source defines:

    worker = await launch_worker(Path(lazy_script))
    await worker.request("http://loader/", method="POST", body=source)
    response = await worker.request("http://example.com/")
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional

from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ..worker.protocol import SCRIPT_KIND_SCRIPT
from .handler import GuestHandler

logger = logging.getLogger(__name__)

LAZY_MODULE_NAME = "__guest_lazy__"


class HandlerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class LazyHandler:
    """
    Handler object that loads its implementation on first use.

    Requests that arrive while the source is loading wait in a queue and are
    served in arrival order once the handler is ready, or fail with the load
    error.
    """

    def __init__(self) -> None:
        self.state = HandlerState.UNINITIALIZED
        self._handler: Optional[GuestHandler] = None
        self._pending: List[asyncio.Future] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def fetch(self, request: Request) -> Response:
        if self.state is HandlerState.READY:
            if self._handler is None:
                raise RuntimeError("Handler marked ready before it was loaded")
            return await self._handler.dispatch(request)

        if self.state is HandlerState.INITIALIZING:
            waiter = asyncio.get_running_loop().create_future()
            self._pending.append(waiter)
            handler = await waiter
            return await handler.dispatch(request)

        return await self._initialize(request)

    async def _initialize(self, request: Request) -> Response:
        self.state = HandlerState.INITIALIZING
        try:
            source = (await request.body()).decode("utf-8")
            if not source.strip():
                self.state = HandlerState.UNINITIALIZED
                self._settle(error=ValueError("No handler source provided"))
                return PlainTextResponse("No handler source provided", status_code=400)

            handler = GuestHandler.load(SCRIPT_KIND_SCRIPT, source, name=LAZY_MODULE_NAME)
        except Exception as e:
            logger.error(f"Failed to load handler source: {e}", exc_info=True)
            self.state = HandlerState.UNINITIALIZED
            self._settle(error=e)
            return PlainTextResponse(f"Failed to load handler: {e}", status_code=500)

        self._handler = handler
        self.state = HandlerState.READY
        self._settle(handler=handler)
        logger.info("Handler loaded")
        return PlainTextResponse("", status_code=200)

    def _settle(
        self, handler: Optional[GuestHandler] = None, error: Optional[BaseException] = None
    ) -> None:
        pending, self._pending = self._pending, []
        for waiter in pending:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(handler)


handler = LazyHandler()
