"""
Request Context Middleware Tests.

WHAT: Unit tests for the RequestContextMiddleware and its helpers.

WHY: The request id ties a PayTech delivery, the transition it caused and
later admin audit rows together. These tests ensure correct behavior for:
- Client IP extraction (direct and through proxies)
- Request ID reuse and generation
- Context availability during the request and cleanup after it
"""

import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from basketstats.core.logging import RequestIdFilter
from basketstats.middleware.request_context import (
    REQUEST_ID_HEADER,
    RequestContext,
    RequestContextMiddleware,
    bind_request_context,
    get_client_ip,
    get_request_context,
    reset_request_context,
)


def _make_request(headers: dict = None, client_host: str = None) -> Request:
    scope = {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


class TestGetClientIp:
    """Tests for the get_client_ip function."""

    def test_x_real_ip_wins(self):
        request = _make_request(
            headers={"X-Real-IP": "10.0.0.1", "X-Forwarded-For": "10.0.0.2"},
            client_host="127.0.0.1",
        )
        assert get_client_ip(request) == "10.0.0.1"

    def test_first_forwarded_for_entry(self):
        request = _make_request(headers={"X-Forwarded-For": "41.82.1.1, 10.0.0.2"})
        assert get_client_ip(request) == "41.82.1.1"

    def test_direct_connection(self):
        assert get_client_ip(_make_request(client_host="192.168.1.5")) == "192.168.1.5"

    def test_unknown_without_client(self):
        assert get_client_ip(_make_request()) == "unknown"


class TestRequestContextMiddleware:
    """Tests for the middleware itself."""

    @pytest.fixture
    def app(self):
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)

        @app.get("/ctx")
        async def ctx():
            context = get_request_context()
            return {"request_id": context.request_id, "path": context.path}

        return app

    def test_reuses_inbound_request_id(self, app):
        """
        Verify a gateway-provided id is kept.

        WHY: The id must match the one in the gateway's own logs.
        """
        response = TestClient(app).get("/ctx", headers={REQUEST_ID_HEADER: "req-123"})

        assert response.json() == {"request_id": "req-123", "path": "/ctx"}
        assert response.headers[REQUEST_ID_HEADER] == "req-123"

    def test_generates_request_id(self, app):
        response = TestClient(app).get("/ctx")

        request_id = response.json()["request_id"]
        assert len(request_id) == 36
        assert response.headers[REQUEST_ID_HEADER] == request_id

    def test_context_cleared_after_request(self, app):
        TestClient(app).get("/ctx")
        assert get_request_context() is None


class TestBoundContext:
    """Synthetic contexts bound outside HTTP handling (CLI)."""

    def test_bind_and_reset(self):
        context = RequestContext(
            request_id="cli-1",
            ip_address="local",
            user_agent="basketstats-admin",
            path="sweep",
            method="CLI",
        )
        token = bind_request_context(context)
        try:
            assert get_request_context() is context
        finally:
            reset_request_context(token)

        assert get_request_context() is None

    def test_log_records_carry_request_id(self):
        """Verify the logging filter stamps the bound request id."""
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)
        token = bind_request_context(
            RequestContext(
                request_id="cli-42",
                ip_address="local",
                user_agent=None,
                path="sweep",
                method="CLI",
            )
        )
        try:
            RequestIdFilter().filter(record)
        finally:
            reset_request_context(token)

        assert record.request_id == "cli-42"

    def test_log_records_without_context(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)
        RequestIdFilter().filter(record)
        assert record.request_id == "-"
