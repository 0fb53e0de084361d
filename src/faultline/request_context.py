"""Per-request correlation id and log context.

The request id is resolved once per request (an inbound ``X-Request-ID``
wins, otherwise a fresh ``req_<hex>`` id) and cached on ``request.state``,
so every later read within the same request returns the same value.
Nothing here is process-wide.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "X-Request-ID"
_INBOUND_HEADERS = ("x-request-id", "request-id")
# Inbound ids end up in logs; keep them to a safe charset.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def new_request_id() -> str:
    return f"req_{secrets.token_hex(8)}"


def resolve_request_id(headers: Mapping[str, str]) -> str:
    for name in _INBOUND_HEADERS:
        value = (headers.get(name) or "").strip()
        if value and _REQUEST_ID_PATTERN.match(value):
            return value
    return new_request_id()


def get_request_id(conn: HTTPConnection) -> str:
    """Return the request's correlation id, assigning it on first read."""
    request_id = getattr(conn.state, "request_id", None)
    if request_id is None:
        request_id = resolve_request_id(conn.headers)
        conn.state.request_id = request_id
    return request_id


@dataclass(frozen=True)
class RequestContext:
    """Who/what a request was, for log enrichment only."""

    request_id: str
    user_id: Any = None
    tenant_id: Any = None
    url: str = ""
    method: str = ""
    client_addr: str = ""

    @classmethod
    def from_request(cls, conn: HTTPConnection) -> RequestContext:
        url = conn.url.path
        if conn.url.query:
            url = f"{url}?{conn.url.query}"
        return cls(
            request_id=get_request_id(conn),
            # Populated by the auth layer when the caller is known.
            user_id=getattr(conn.state, "user_id", None),
            tenant_id=getattr(conn.state, "tenant_id", None),
            url=url,
            method=conn.scope.get("method", ""),
            client_addr=conn.client.host if conn.client else "",
        )

    def as_log_context(self) -> dict[str, Any]:
        ctx = asdict(self)
        ctx.pop("request_id")
        return ctx


class RequestContextMiddleware:
    """ASGI middleware that assigns the request id and echoes it back.

    Runs outermost so the id exists before any handler or error path reads
    it, and so error responses carry the same ``X-Request-ID`` as the body.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = get_request_id(HTTPConnection(scope))

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if REQUEST_ID_HEADER.lower() not in headers:
                    headers.append(REQUEST_ID_HEADER, request_id)
            await send(message)

        await self.app(scope, receive, send_with_request_id)
