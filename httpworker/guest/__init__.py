"""Guest side of the HTTP worker.

Code in this package runs inside the guest process spawned by
``httpworker.worker.launch_worker``. Handler scripts import from here:

    from fastapi.responses import PlainTextResponse
    from httpworker.guest import upgrade_websocket

    async def fetch(request):
        if request.headers.get("upgrade") == "websocket":
            websocket, response = upgrade_websocket(request)
            ...
        return PlainTextResponse("hello")

Key components:
- bootstrap: process entry point and the socket server
- decoder: rebuilds the application request from control headers
- handler: loads the script and calls fetch / on_error / on_listen
- bridge: WebSocket upgrades for application code
- permissions: runtime permission policy
- lazy: a handler loaded from the first request body
"""

from .bridge import SwitchingProtocols, UpgradeBridge, upgrade_websocket
from .decoder import GuestRequest, decode_request
from .handler import GuestHandler
from .lazy import HandlerState, LazyHandler
from .permissions import GuestPermissions

__all__ = [
    "upgrade_websocket",
    "SwitchingProtocols",
    "UpgradeBridge",
    "GuestRequest",
    "decode_request",
    "GuestHandler",
    "HandlerState",
    "LazyHandler",
    "GuestPermissions",
]
