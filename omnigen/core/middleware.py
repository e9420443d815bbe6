"""ASGI middleware.

Both are raw ASGI (not BaseHTTPMiddleware): they only touch the response
start message, so SSE bodies from /chat/completions pass through
unbuffered and a client disconnect reaches the stream directly.
"""

import uuid

import structlog
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from omnigen.core.config import settings

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 64


class SecurityHeadersMiddleware:
    """Add security headers to every HTTP response.

    - X-Frame-Options / CSP frame-ancestors: no framing
    - X-Content-Type-Options: no MIME sniffing
    - Referrer-Policy: origin only on cross-origin requests
    - Cache-Control: no-store on /api/ unless the endpoint set its own
      (SSE streams send no-cache)
    - Strict-Transport-Security: production only (HTTPS terminates at the proxy)
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        is_api = scope["path"].startswith("/api/")

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["X-Frame-Options"] = "DENY"
                headers["X-Content-Type-Options"] = "nosniff"
                headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
                headers["Content-Security-Policy"] = (
                    "default-src 'none'; frame-ancestors 'none'"
                )
                if is_api and "cache-control" not in headers:
                    headers["Cache-Control"] = "no-store, max-age=0"
                if settings.environment == "production":
                    headers["Strict-Transport-Security"] = (
                        "max-age=31536000; includeSubDomains"
                    )
            await send(message)

        await self.app(scope, receive, send_with_headers)


class RequestContextMiddleware:
    """Bind a request id to the structlog context for the request's duration.

    Uses the client's X-Request-ID when it is short enough, otherwise a new
    UUID, and echoes it on the response.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = Headers(scope=scope).get(REQUEST_ID_HEADER)
        if incoming and len(incoming) <= _MAX_REQUEST_ID_LENGTH:
            request_id = incoming
        else:
            request_id = str(uuid.uuid4())

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        with structlog.contextvars.bound_contextvars(
            request_id=request_id, path=scope["path"]
        ):
            await self.app(scope, receive, send_with_id)
