"""Tests for host-side request encoding."""

import httpx

from httpworker.worker.protocol import (
    CONNECTION_HEADER,
    HOST_HEADER,
    URL_HEADER,
    RequestEnvelope,
)
from httpworker.worker.proxy import (
    ascii_url,
    build_request,
    build_warmup_request,
    encode_headers,
    encode_upgrade_headers,
)


class TestEncodeHeaders:
    """Test control header encoding."""

    def test_sets_url_header(self):
        headers = encode_headers("https://example.com/a?b=1")
        assert headers[URL_HEADER] == "https://example.com/a?b=1"

    def test_moves_host_and_connection(self):
        headers = encode_headers(
            "https://example.com/",
            {"host": "example.org", "connection": "keep-alive", "x-custom": "1"},
        )
        assert "host" not in headers
        assert "connection" not in headers
        assert headers[HOST_HEADER] == "example.org"
        assert headers[CONNECTION_HEADER] == "keep-alive"
        assert headers["x-custom"] == "1"

    def test_caller_control_headers_dropped(self):
        headers = encode_headers(
            "https://good.example/",
            {
                URL_HEADER: "https://evil.example/",
                HOST_HEADER: "evil.example",
                CONNECTION_HEADER: "close",
            },
        )
        assert headers.get_list(URL_HEADER) == ["https://good.example/"]
        assert HOST_HEADER not in headers
        assert CONNECTION_HEADER not in headers

    def test_control_headers_dropped_case_insensitively(self):
        headers = encode_headers("https://good.example/", [("X-HttpWorker-Host", "evil")])
        assert HOST_HEADER not in headers

    def test_caller_headers_untouched(self):
        original = {"host": "example.org", URL_HEADER: "x"}
        encode_headers("https://example.com/", original)
        assert original == {"host": "example.org", URL_HEADER: "x"}

    def test_repeated_headers_kept(self):
        headers = encode_headers("https://example.com/", [("x-seq", "1"), ("x-seq", "2")])
        assert headers.get_list("x-seq") == ["1", "2"]

    def test_non_ascii_url_is_percent_encoded(self):
        headers = encode_headers("https://example.com/caf\u00e9?q=\u00fc")
        assert headers[URL_HEADER] == "https://example.com/caf%C3%A9?q=%C3%BC"

    def test_ascii_url_unchanged(self):
        url = "https://example.com/caf%C3%A9?q=a%20b&r=~x#frag"
        assert ascii_url(url) == url
        assert encode_headers(url)[URL_HEADER] == url

    def test_upgrade_headers_are_pairs(self):
        pairs = encode_upgrade_headers("wss://example.com/chat", {"x-token": "t"})
        assert ("x-token", "t") in pairs
        assert (URL_HEADER, "wss://example.com/chat") in pairs


class TestBuildRequest:
    """Test transport request construction."""

    def test_targets_synthetic_origin(self):
        request = build_request(RequestEnvelope(url="https://example.com/x", method="post", body=b"hi"))
        assert request.method == "POST"
        assert request.url == httpx.URL("http://httpworker/")
        assert request.headers[URL_HEADER] == "https://example.com/x"
        assert request.content == b"hi"

    def test_non_ascii_url(self):
        request = build_request(RequestEnvelope(url="https://example.com/\u65e5\u672c?name=zo\u00eb"))
        assert request.headers[URL_HEADER] == "https://example.com/%E6%97%A5%E6%9C%AC?name=zo%C3%AB"

    def test_no_client_default_headers(self):
        request = build_request(RequestEnvelope(url="https://example.com/"))
        assert "user-agent" not in request.headers
        assert "accept" not in request.headers

    def test_no_timeout(self):
        request = build_request(RequestEnvelope(url="https://example.com/"))
        assert request.extensions["timeout"] == {
            "connect": None,
            "read": None,
            "write": None,
            "pool": None,
        }

    def test_warmup_has_no_url_header(self):
        request = build_warmup_request()
        assert URL_HEADER not in request.headers
        assert request.method == "GET"
