"""WebSocket upgrades for application code.

Application code only ever sees the reconstructed request, never the socket
connection it arrived on. The bridge maps one to the other for the length
of the handshake so a handler can still take the connection over:

    from httpworker.guest import upgrade_websocket

    async def fetch(request):
        websocket, response = upgrade_websocket(request)
        await websocket.accept()
        ...
        return response
"""

from __future__ import annotations

import uuid
from typing import Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import Response
from starlette.websockets import WebSocket

# Scope key carrying the token that links a request to its connection.
UPGRADE_TOKEN_KEY = "httpworker.upgrade_token"


class SwitchingProtocols(Response):
    """Response telling the bootstrap the handler took over the connection."""

    def __init__(self) -> None:
        super().__init__(status_code=101)


class UpgradeBridge:
    """
    Links reconstructed requests to the WebSocket connections they came from.

    One bridge exists per guest process. Entries live only while the
    handshake is being handled, so the mapping never outlives its connection.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def retain(self, request: Request, websocket: WebSocket) -> str:
        """Register ``websocket`` as the original connection of ``request``."""
        token = uuid.uuid4().hex
        request.scope[UPGRADE_TOKEN_KEY] = token
        self._connections[token] = websocket
        return token

    def release(self, token: str) -> None:
        self._connections.pop(token, None)

    def lookup(self, request: Request) -> Optional[WebSocket]:
        token = request.scope.get(UPGRADE_TOKEN_KEY)
        if token is None:
            return None
        return self._connections.get(token)

    def upgrade(self, request: Request) -> Tuple[WebSocket, SwitchingProtocols]:
        """
        Hand the original connection of ``request`` to application code.

        Returns:
            (websocket, response) - the handler accepts and drives the
            WebSocket, then returns the response from fetch

        Raises:
            TypeError: If ``request`` is not a WebSocket handshake
        """
        websocket = self.lookup(request)
        if websocket is None:
            raise TypeError("Request is not a WebSocket upgrade request")
        return websocket, SwitchingProtocols()


def upgrade_websocket(request: Request) -> Tuple[WebSocket, SwitchingProtocols]:
    """Upgrade ``request`` through the bridge of the running guest."""
    app = request.scope.get("app")
    bridge = getattr(getattr(app, "state", None), "upgrade_bridge", None)
    if bridge is None:
        raise TypeError("WebSocket upgrades are only available inside a guest worker")
    return bridge.upgrade(request)
