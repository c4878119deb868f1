"""Guest side of the proxy protocol: rebuild the request application code sees."""

from __future__ import annotations

from typing import List, Optional, Tuple
from urllib.parse import unquote

from starlette.datastructures import URL, Headers
from starlette.requests import Request
from starlette.types import Message, Receive, Scope

from ..worker.protocol import CONNECTION_HEADER, CONTROL_HEADERS, HOST_HEADER, URL_HEADER

# Transport artifacts and the side channel; never shown to application code.
STRIPPED_HEADERS = frozenset(
    [b"host", b"connection", *(name.encode("latin-1") for name in CONTROL_HEADERS)]
)

# Routing keys of the bootstrap's catch-all route.
ROUTING_SCOPE_KEYS = ("endpoint", "route", "path_params")


class GuestRequest(Request):
    """
    The request handed to application code.

    Its ``url`` is exactly the URL the host caller asked for, whatever
    ``host`` header the request carries.
    """

    def __init__(self, scope: Scope, receive: Receive, url: str):
        super().__init__(scope, receive)
        self._target_url = URL(url)

    @property
    def url(self) -> URL:
        return self._target_url


async def _empty_body() -> Message:
    return {"type": "http.request", "body": b"", "more_body": False}


def _restored_headers(scope: Scope, headers: Headers) -> List[Tuple[bytes, bytes]]:
    raw = [(key, value) for key, value in scope["headers"] if key.lower() not in STRIPPED_HEADERS]

    true_host = headers.get(HOST_HEADER)
    if true_host is not None:
        raw.append((b"host", true_host.encode("latin-1")))

    true_connection = headers.get(CONNECTION_HEADER)
    if true_connection is not None:
        raw.append((b"connection", true_connection.encode("latin-1")))

    return raw


def decode_request(scope: Scope, receive: Optional[Receive] = None) -> Optional[GuestRequest]:
    """
    Rebuild the application request from an inbound socket request.

    Args:
        scope: ASGI scope of the inbound request (http or websocket)
        receive: Body channel of the inbound request; websocket handshakes
                 have no body and get an empty one

    Returns:
        The reconstructed request, or None for a warm-up request
    """
    headers = Headers(scope=scope)
    target = headers.get(URL_HEADER)
    if target is None:
        return None

    url = URL(target)
    path = url.path or "/"

    guest_scope = dict(scope)
    for key in ROUTING_SCOPE_KEYS:
        guest_scope.pop(key, None)
    guest_scope.update(
        {
            "type": "http",
            "method": scope.get("method", "GET"),
            "scheme": url.scheme,
            "server": (url.hostname, url.port),
            "root_path": "",
            "path": unquote(path),
            "raw_path": path.encode("latin-1"),
            "query_string": url.query.encode("latin-1"),
            "headers": _restored_headers(scope, headers),
        }
    )

    return GuestRequest(guest_scope, receive or _empty_body, target)
