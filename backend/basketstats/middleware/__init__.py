"""
Middleware package.

WHY: Middleware provides cross-cutting concerns (request correlation) that
apply to all requests.
"""

from basketstats.middleware.request_context import (
    RequestContextMiddleware,
    RequestContext,
    get_request_context,
    bind_request_context,
    reset_request_context,
    get_client_ip,
    get_user_agent,
)

__all__ = [
    "RequestContextMiddleware",
    "RequestContext",
    "get_request_context",
    "bind_request_context",
    "reset_request_context",
    "get_client_ip",
    "get_user_agent",
]
