"""Tests for the lazily loaded handler."""

import asyncio

import pytest
from starlette.requests import Request

from httpworker.guest.lazy import HandlerState, LazyHandler

INNER_SOURCE = """
from starlette.responses import PlainTextResponse

async def fetch(request):
    return PlainTextResponse(f"inner {request.headers.get('x-seq', '-')}")
"""


def make_request(body=b"", seq=None, gate=None):
    headers = [(b"x-seq", str(seq).encode())] if seq is not None else []
    scope = {"type": "http", "method": "POST", "headers": headers, "path": "/", "query_string": b""}

    async def receive():
        if gate is not None:
            await gate.wait()
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def run(coro, timeout=10):
    return asyncio.run(asyncio.wait_for(coro, timeout))


class TestLazyHandler:
    """Test state transitions and queue draining."""

    def test_first_request_loads_handler(self):
        async def _test():
            lazy = LazyHandler()
            first = await lazy.fetch(make_request(INNER_SOURCE.encode()))
            second = await lazy.fetch(make_request(seq=7))
            return lazy, first, second

        lazy, first, second = run(_test())
        assert lazy.state is HandlerState.READY
        assert first.status_code == 200
        assert first.body == b""
        assert second.body == b"inner 7"

    def test_empty_body_leaves_uninitialized(self):
        async def _test():
            lazy = LazyHandler()
            response = await lazy.fetch(make_request(b"  \n"))
            return lazy, response

        lazy, response = run(_test())
        assert response.status_code == 400
        assert lazy.state is HandlerState.UNINITIALIZED

    def test_requests_wait_while_initializing(self):
        async def _test():
            lazy = LazyHandler()
            gate = asyncio.Event()
            loader = asyncio.create_task(lazy.fetch(make_request(INNER_SOURCE.encode(), gate=gate)))
            await asyncio.sleep(0)
            assert lazy.state is HandlerState.INITIALIZING

            waiting = [asyncio.create_task(lazy.fetch(make_request(seq=i))) for i in range(5)]
            await asyncio.sleep(0)
            assert lazy.pending == 5

            gate.set()
            loaded = await loader
            responses = await asyncio.gather(*waiting)
            return lazy, loaded, responses

        lazy, loaded, responses = run(_test())
        assert loaded.status_code == 200
        assert [r.body for r in responses] == [f"inner {i}".encode() for i in range(5)]
        assert lazy.pending == 0

    def test_load_failure_fails_waiters_and_resets(self):
        async def _test():
            lazy = LazyHandler()
            gate = asyncio.Event()
            loader = asyncio.create_task(lazy.fetch(make_request(b"raise RuntimeError('bad source')", gate=gate)))
            await asyncio.sleep(0)
            waiter = asyncio.create_task(lazy.fetch(make_request(seq=1)))
            await asyncio.sleep(0)
            gate.set()
            loaded = await loader
            try:
                await waiter
            except RuntimeError as e:
                waited = e
            return lazy, loaded, waited

        lazy, loaded, waited = run(_test())
        assert loaded.status_code == 500
        assert "bad source" in str(waited)
        assert lazy.state is HandlerState.UNINITIALIZED

    def test_can_retry_after_failure(self):
        async def _test():
            lazy = LazyHandler()
            await lazy.fetch(make_request(b"this is not python"))
            await lazy.fetch(make_request(INNER_SOURCE.encode()))
            return lazy, await lazy.fetch(make_request(seq=2))

        lazy, response = run(_test())
        assert lazy.state is HandlerState.READY
        assert response.body == b"inner 2"

    def test_ready_without_handler_is_an_error(self):
        lazy = LazyHandler()
        lazy.state = HandlerState.READY
        with pytest.raises(RuntimeError, match="before it was loaded"):
            run(lazy.fetch(make_request(seq=1)))
