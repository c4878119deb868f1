"""Tests for guest-side request reconstruction."""

import asyncio

from httpworker.guest.decoder import GuestRequest, decode_request


def make_scope(headers, scope_type="http", method="POST"):
    scope = {
        "type": scope_type,
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "scheme": "http",
        "server": ("httpworker", None),
        "client": None,
        "root_path": "",
        "path": "/",
        "raw_path": b"/",
        "query_string": b"",
        "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers],
        "path_params": {"path": ""},
    }
    if scope_type == "http":
        scope["method"] = method
    return scope


def body_receive(body):
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return receive


class TestDecodeRequest:
    """Test request reconstruction from control headers."""

    def test_warmup_request_returns_none(self):
        scope = make_scope([("host", "httpworker"), ("accept", "*/*")])
        assert decode_request(scope) is None

    def test_url_is_exactly_the_target(self):
        scope = make_scope([("host", "httpworker"), ("x-httpworker-url", "https://host/path?q=1")])
        request = decode_request(scope, body_receive(b""))

        assert isinstance(request, GuestRequest)
        assert str(request.url) == "https://host/path?q=1"
        assert request.url.path == "/path"
        assert request.query_params["q"] == "1"
        assert request.scope["scheme"] == "https"
        assert request.scope["server"] == ("host", None)
        assert request.method == "POST"

    def test_transport_host_and_connection_dropped(self):
        scope = make_scope(
            [
                ("host", "httpworker"),
                ("connection", "keep-alive"),
                ("x-httpworker-url", "https://example.com/"),
                ("accept", "text/plain"),
            ]
        )
        request = decode_request(scope)

        assert "host" not in request.headers
        assert "connection" not in request.headers
        assert request.headers["accept"] == "text/plain"

    def test_true_host_and_connection_restored(self):
        scope = make_scope(
            [
                ("host", "httpworker"),
                ("x-httpworker-url", "https://example.com/"),
                ("x-httpworker-host", "example.org"),
                ("x-httpworker-connection", "upgrade"),
            ]
        )
        request = decode_request(scope)

        assert request.headers["host"] == "example.org"
        assert request.headers["connection"] == "upgrade"

    def test_control_headers_hidden(self):
        scope = make_scope(
            [
                ("x-httpworker-url", "https://example.com/"),
                ("x-httpworker-host", "example.org"),
            ]
        )
        request = decode_request(scope)

        names = [name for name, _ in request.headers.items()]
        assert not [name for name in names if name.startswith("x-httpworker-")]

    def test_repeated_headers_kept_in_order(self):
        scope = make_scope(
            [("x-httpworker-url", "https://example.com/"), ("x-seq", "1"), ("x-seq", "2")]
        )
        request = decode_request(scope)
        assert request.headers.getlist("x-seq") == ["1", "2"]

    def test_body_stream_passed_through(self):
        scope = make_scope([("x-httpworker-url", "https://example.com/upload")])
        request = decode_request(scope, body_receive(b"payload"))
        assert asyncio.run(request.body()) == b"payload"

    def test_percent_encoded_path(self):
        scope = make_scope([("x-httpworker-url", "https://example.com/a%20b")])
        request = decode_request(scope)
        assert request.scope["path"] == "/a b"
        assert request.scope["raw_path"] == b"/a%20b"

    def test_routing_keys_removed(self):
        scope = make_scope([("x-httpworker-url", "https://example.com/")])
        request = decode_request(scope)
        assert request.path_params == {}

    def test_original_scope_untouched(self):
        scope = make_scope([("host", "httpworker"), ("x-httpworker-url", "https://example.com/")])
        decode_request(scope)
        assert scope["path_params"] == {"path": ""}
        assert (b"host", b"httpworker") in scope["headers"]

    def test_websocket_handshake_becomes_get_with_empty_body(self):
        scope = make_scope(
            [("x-httpworker-url", "wss://example.com/chat"), ("upgrade", "websocket")],
            scope_type="websocket",
        )
        request = decode_request(scope)

        assert request.method == "GET"
        assert str(request.url) == "wss://example.com/chat"
        assert asyncio.run(request.body()) == b""
