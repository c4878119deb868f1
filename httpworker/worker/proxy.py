"""Host side of the proxy protocol: encode caller requests for the socket hop."""

from __future__ import annotations

import re
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx

from .protocol import (
    CONNECTION_HEADER,
    CONTROL_HEADERS,
    HOST_HEADER,
    SYNTHETIC_ORIGIN,
    URL_HEADER,
    HeaderInput,
    RequestEnvelope,
)

# The socket hop has no deadline of its own; callers race terminate() instead.
NO_TIMEOUT = httpx.Timeout(None).as_dict()

_NON_ASCII = re.compile(r"[^\x00-\x7f]+")


def ascii_url(url: str) -> str:
    """Percent-encode the non-ASCII characters of ``url`` as UTF-8; ASCII is kept as is."""
    if url.isascii():
        return url
    return _NON_ASCII.sub(lambda match: quote(match.group(0), safe=""), url)


def encode_headers(url: str, headers: Optional[HeaderInput] = None) -> httpx.Headers:
    """
    Build the header set sent over the socket for one request.

    The caller's headers are copied, any control headers they carry are
    dropped, ``host`` and ``connection`` move into their control headers and
    the true URL is added. Header values must be ASCII, so non-ASCII
    characters in the URL are percent-encoded.

    Args:
        url: Target URL the application should see
        headers: Caller's headers

    Returns:
        New header collection; ``headers`` is left untouched
    """
    encoded = httpx.Headers(headers)

    for name in CONTROL_HEADERS:
        encoded.pop(name, None)

    host = encoded.pop("host", None)
    if host is not None:
        encoded[HOST_HEADER] = host

    connection = encoded.pop("connection", None)
    if connection is not None:
        encoded[CONNECTION_HEADER] = connection

    encoded[URL_HEADER] = ascii_url(url)
    return encoded


def encode_upgrade_headers(url: str, headers: Optional[HeaderInput] = None) -> List[Tuple[str, str]]:
    """Headers for a WebSocket handshake, as pairs for the websockets client."""
    return list(encode_headers(url, headers).multi_items())


def build_request(envelope: RequestEnvelope) -> httpx.Request:
    """
    Build the transport request for an envelope.

    The request is built directly rather than through the client so no
    client default headers (user agent, accept, ...) are injected.
    """
    return httpx.Request(
        envelope.method.upper(),
        f"{SYNTHETIC_ORIGIN}/",
        headers=encode_headers(envelope.url, envelope.headers),
        content=envelope.body,
        extensions={"timeout": NO_TIMEOUT},
    )


def build_warmup_request() -> httpx.Request:
    """A request without the URL header; the guest answers it itself."""
    return httpx.Request("GET", f"{SYNTHETIC_ORIGIN}/", extensions={"timeout": NO_TIMEOUT})
