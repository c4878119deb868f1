"""Loading and calling the untrusted handler script."""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import sys
import types
from typing import Any, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from ..worker.protocol import SCRIPT_KIND_IMPORT, SCRIPT_KIND_SCRIPT

logger = logging.getLogger(__name__)

GUEST_MODULE_NAME = "__guest__"

INVALID_RESPONSE_MESSAGE = (
    "Return value from fetch must be a Response or an awaitable resolving to a Response"
)


def default_error_response() -> Response:
    return PlainTextResponse("Internal Server Error", status_code=500)


def path_from_url(url: str) -> str:
    """Turn an import URL into a filesystem path. Only file URLs are accepted."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        raise ValueError(f"Unsupported import URL scheme: {parsed.scheme or url!r}")
    return url2pathname(parsed.path)


def load_module(script_kind: str, script: str, name: str = GUEST_MODULE_NAME) -> types.ModuleType:
    """
    Execute a handler script as a module.

    Args:
        script_kind: "script" for inline source, "import" for a file URL
        script: The source text or the URL
        name: Module name registered in sys.modules

    Returns:
        The executed module
    """
    if script_kind == SCRIPT_KIND_SCRIPT:
        module = types.ModuleType(name)
        sys.modules[name] = module
        exec(compile(script, f"<{name}>", "exec"), module.__dict__)
        return module

    if script_kind == SCRIPT_KIND_IMPORT:
        path = path_from_url(script)
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load handler from {script}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        spec.loader.exec_module(module)
        return module

    raise ValueError(f"Unknown script kind: {script_kind}")


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class GuestHandler:
    """
    The handler object of a loaded script.

    ``fetch(request)`` is required. ``on_error(error)`` and
    ``on_listen(socket_path)`` are optional. Each may be sync or async;
    sync ``fetch`` and ``on_error`` run in a worker thread.
    """

    def __init__(self, target: Any):
        fetch = getattr(target, "fetch", None)
        if not callable(fetch):
            raise TypeError("Script does not define a fetch function.")

        self.target = target
        self._fetch = fetch
        self._on_error = getattr(target, "on_error", None)
        self._on_listen = getattr(target, "on_listen", None)

    @classmethod
    def load(cls, script_kind: str, script: str, name: str = GUEST_MODULE_NAME) -> GuestHandler:
        """Load a script and wrap its ``handler`` attribute, or the module itself."""
        module = load_module(script_kind, script, name)
        return cls(getattr(module, "handler", module))

    async def _call(self, func: Any, arg: Any) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(arg)
        return await _resolve(await asyncio.to_thread(func, arg))

    async def dispatch(self, request: Request) -> Response:
        """
        Call ``fetch`` and always come back with a Response.

        Errors and invalid return values go to ``on_error``, or become the
        default 500 answer.
        """
        try:
            result = await self._call(self._fetch, request)
            if not isinstance(result, Response):
                raise TypeError(INVALID_RESPONSE_MESSAGE)
            return result
        except Exception as e:
            return await self.handle_error(e)

    async def handle_error(self, error: Exception) -> Response:
        if not callable(self._on_error):
            logger.error(f"Unhandled error in fetch: {error}", exc_info=error)
            return default_error_response()

        try:
            result = await self._call(self._on_error, error)
            if not isinstance(result, Response):
                raise TypeError(INVALID_RESPONSE_MESSAGE.replace("fetch", "on_error"))
            return result
        except Exception as e:
            logger.error(f"on_error failed while handling {error!r}: {e}", exc_info=True)
            return default_error_response()

    async def listen(self, socket_path: str) -> None:
        """Tell the script the guest is listening."""
        if not callable(self._on_listen):
            return
        await _resolve(self._on_listen(socket_path))


def load_handler(script_kind: str, script: str) -> Optional[GuestHandler]:
    """Load the guest's handler, logging and returning None on failure."""
    try:
        return GuestHandler.load(script_kind, script)
    except Exception as e:
        logger.error(f"Failed to load handler script: {e}", exc_info=True)
        return None
