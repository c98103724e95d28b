"""
Request context middleware.

WHAT: Captures the request id, client IP and user agent of every request and
makes them available to services, the audit trail and log records.

WHY: A PayTech notification, the transition it caused and the audit row of a
later admin correction must be traceable to one another. The request id is
stamped on every log record (see core.logging) and echoed to the caller.

HOW: Stores the context in a ContextVar so code without access to the
Request object (services, DAOs, the logging filter) can read it.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass(frozen=True)
class RequestContext:
    """
    Request-scoped context data.

    Fields:
    - request_id: correlation id (inbound X-Request-ID or a fresh UUID4)
    - ip_address: client's real IP (considering proxies)
    - user_agent: client identifier, None when absent
    - path / method: what was called
    """

    request_id: str
    ip_address: str
    user_agent: Optional[str]
    path: str
    method: str


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """Return the current request context, None outside a request."""
    return _request_context.get()


def bind_request_context(context: RequestContext) -> Token:
    """
    Install a context outside of HTTP handling.

    WHY: CLI commands produce audit rows and log lines too; binding a
    synthetic context keeps their records correlated.

    Returns:
        Token to pass to reset_request_context
    """
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_client_ip(request: Request) -> str:
    """
    Extract the real client IP address from a request.

    HOW: Checks headers in order of trust:
    1. X-Real-IP (set by nginx-style proxies)
    2. X-Forwarded-For (first entry is the original client)
    3. request.client.host (direct connection IP)

    Security Note:
        These headers can be spoofed by clients if not behind a trusted proxy.
    """
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()

    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    HOW: Reuses an inbound X-Request-ID when the caller (gateway, operator
    tool) supplied one, otherwise generates a UUID4. The id is returned in the
    X-Request-ID response header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        inbound_id = request.headers.get(REQUEST_ID_HEADER)
        request_id = inbound_id.strip()[:64] if inbound_id else str(uuid.uuid4())

        context = RequestContext(
            request_id=request_id,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            path=request.url.path,
            method=request.method,
        )
        request.state.context = context
        token = _request_context.set(context)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            _request_context.reset(token)
