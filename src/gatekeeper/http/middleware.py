"""
ASGI middleware that puts a ``SecurityMonitor`` in front of an application.

The request body is buffered once so detectors can inspect it, then replayed
to the wrapped application unchanged. Rejections are written as structured
JSON with a stable ``code`` and, for rate limiting, a ``Retry-After`` header.

``SecurityHeadersMiddleware`` stamps browser hardening headers on every
response, rejections included.
"""

import uuid
from typing import Any, Awaitable, Callable, MutableMapping

from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse

from ..security.config import SecurityConfig
from ..security.monitor import SecurityDecision, SecurityMonitor
from ..security.request import RequestView, parse_body, resolve_client_id
from ..util.log import REQUEST_ID

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


def _decode_headers(raw_headers: list[tuple[bytes, bytes]]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in raw_headers:
        key = name.decode("latin-1").lower()
        text = value.decode("latin-1")
        headers[key] = f"{headers[key]}, {text}" if key in headers else text
    return headers


def _parse_content_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


class SecurityMonitorMiddleware:
    """Pure ASGI middleware running every HTTP request through the monitor."""

    def __init__(
        self,
        app: ASGIApp,
        monitor: SecurityMonitor,
        trust_proxy: bool | None = None,
    ):
        self.app = app
        self.monitor = monitor
        self.trust_proxy = monitor.config.trust_proxy if trust_proxy is None else trust_proxy
        self.max_body = monitor.config.max_content_length

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = _decode_headers(scope.get("headers", []))
        client = scope.get("client")
        client_id = resolve_client_id(client[0] if client else None, headers, self.trust_proxy)
        content_length = _parse_content_length(headers.get("content-length"))

        body = b""
        if content_length is None or content_length <= self.max_body:
            body = await self._read_body(receive)
            if len(body) > self.max_body:
                content_length = len(body)

        view = RequestView(
            client_id=client_id,
            method=scope.get("method", "GET"),
            path=scope.get("path", "/"),
            query=scope.get("query_string", b"").decode("latin-1"),
            headers=headers,
            body=parse_body(body, headers.get("content-type")),
            content_length=content_length,
            path_params=scope.get("path_params") or {},
        )

        token = REQUEST_ID.set(headers.get("x-request-id") or uuid.uuid4().hex)
        try:
            decision = self.monitor.evaluate(view)
        finally:
            REQUEST_ID.reset(token)

        if not decision.allowed:
            await self._reject(decision, scope, receive, send)
            return

        await self.app(scope, self._replay(body, receive), send)

    async def _read_body(self, receive: Receive) -> bytes:
        """Read the request body, stopping once it passes the size limit."""
        chunks = []
        size = 0
        while True:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            chunks.append(chunk)
            size += len(chunk)
            if not message.get("more_body", False) or size > self.max_body:
                break
        return b"".join(chunks)

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        sent = False

        async def replay() -> Message:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay

    @staticmethod
    async def _reject(decision: SecurityDecision, scope: Scope, receive: Receive, send: Send) -> None:
        headers = {}
        if decision.retry_after is not None:
            headers["Retry-After"] = str(decision.retry_after)

        response = JSONResponse(
            decision.to_response_body(),
            status_code=decision.status_code,
            headers=headers,
        )
        await response(scope, receive, send)


def build_security_headers(config: SecurityConfig) -> dict[str, str]:
    """Response headers derived from the security configuration."""
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": config.frame_options,
        "Referrer-Policy": config.referrer_policy,
    }
    if config.hsts_max_age:
        headers["Strict-Transport-Security"] = f"max-age={config.hsts_max_age}; includeSubDomains; preload"
    if config.content_security_policy:
        headers["Content-Security-Policy"] = config.content_security_policy
    return headers


class SecurityHeadersMiddleware:
    """Adds fixed headers to HTTP responses without overriding ones the app set."""

    def __init__(self, app: ASGIApp, headers: dict[str, str]):
        self.app = app
        self.headers = dict(headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    response_headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)
