"""Request context middleware: request ID and origin device on every request.

Pure ASGI rather than BaseHTTPMiddleware so streaming responses (the event
stream) are not buffered.
"""

import uuid
from typing import Any

from starlette.types import ASGIApp, Receive, Scope, Send


class RequestContextMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = ""
        device_id = ""
        for header_name, header_value in scope.get("headers", []):
            if header_name == b"x-request-id":
                request_id = header_value.decode("latin-1")
            elif header_name == b"x-device-id":
                device_id = header_value.decode("latin-1")
        if not request_id:
            request_id = str(uuid.uuid4())

        state = scope.setdefault("state", {})
        state["request_id"] = request_id
        state["device_id"] = device_id or None

        async def send_wrapper(message: Any) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)
