"""Tests for loading and calling handler scripts."""

import asyncio
import types

import pytest
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from httpworker.guest.handler import GuestHandler, load_module, path_from_url


def make_request():
    return Request({"type": "http", "method": "GET", "headers": [], "path": "/", "query_string": b""})


def dispatch(handler):
    return asyncio.run(handler.dispatch(make_request()))


def handler_from(**attrs):
    return GuestHandler(types.SimpleNamespace(**attrs))


class TestLoading:
    """Test script loading."""

    def test_inline_script_module(self):
        handler = GuestHandler.load("script", "def fetch(request):\n    return None\n", name="_inline_test")
        assert isinstance(handler.target, types.ModuleType)

    def test_handler_attribute_preferred(self):
        source = (
            "class Handler:\n"
            "    def fetch(self, request):\n"
            "        return None\n"
            "handler = Handler()\n"
        )
        handler = GuestHandler.load("script", source, name="_attr_test")
        assert type(handler.target).__name__ == "Handler"

    def test_missing_fetch(self):
        with pytest.raises(TypeError, match="Script does not define a fetch function."):
            GuestHandler.load("script", "x = 1\n", name="_missing_test")

    def test_import_by_file_url(self, tmp_path):
        script = tmp_path / "handler_module.py"
        script.write_text("VALUE = 42\n")
        module = load_module("import", script.as_uri(), name="_import_test")
        assert module.VALUE == 42

    def test_only_file_urls(self):
        with pytest.raises(ValueError):
            path_from_url("https://example.com/handler.py")

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            load_module("eval", "1")


class TestDispatch:
    """Test fetch dispatch and error routing."""

    def test_async_fetch(self):
        async def fetch(request):
            return PlainTextResponse("async")

        assert dispatch(handler_from(fetch=fetch)).body == b"async"

    def test_sync_fetch(self):
        def fetch(request):
            return PlainTextResponse("sync")

        assert dispatch(handler_from(fetch=fetch)).body == b"sync"

    def test_sync_fetch_returning_awaitable(self):
        async def build():
            return PlainTextResponse("later")

        assert dispatch(handler_from(fetch=lambda request: build())).body == b"later"

    def test_error_without_on_error(self):
        def fetch(request):
            raise ValueError("boom")

        response = dispatch(handler_from(fetch=fetch))
        assert response.status_code == 500
        assert response.body == b"Internal Server Error"

    def test_invalid_return_value(self):
        response = dispatch(handler_from(fetch=lambda request: "not a response"))
        assert response.status_code == 500

    def test_on_error_receives_error(self):
        def fetch(request):
            raise ValueError("boom")

        async def on_error(error):
            return PlainTextResponse(f"handled {error}", status_code=418)

        response = dispatch(handler_from(fetch=fetch, on_error=on_error))
        assert response.status_code == 418
        assert response.body == b"handled boom"

    def test_on_error_sees_invalid_return(self):
        seen = []

        def on_error(error):
            seen.append(error)
            return PlainTextResponse("handled", status_code=502)

        response = dispatch(handler_from(fetch=lambda request: 42, on_error=on_error))
        assert response.status_code == 502
        assert isinstance(seen[0], TypeError)
        assert "must be a Response" in str(seen[0])

    def test_failing_on_error(self):
        def fetch(request):
            raise ValueError("boom")

        def on_error(error):
            raise RuntimeError("worse")

        response = dispatch(handler_from(fetch=fetch, on_error=on_error))
        assert response.status_code == 500

    def test_listen(self):
        seen = []
        handler = handler_from(fetch=lambda request: None, on_listen=seen.append)
        asyncio.run(handler.listen("/tmp/x.sock"))
        assert seen == ["/tmp/x.sock"]
