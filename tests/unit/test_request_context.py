"""Tests for request context and its middleware."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from ehr_audit.api.middleware.request_context import (
    HEADER_REQUEST_ID,
    HEADER_RESPONSE_TIME,
    RequestContextMiddleware,
    get_client_ip,
)
from ehr_audit.context import (
    MAX_USER_AGENT_LENGTH,
    RequestContext,
    get_request_context,
    reset_request_context,
    set_request_context,
)


def make_request(headers=None, client=("203.0.113.9", 5000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestRequestContext:
    """Test the request-scoped context object."""

    def test_generates_request_id(self):
        assert RequestContext().request_id
        assert RequestContext().request_id != RequestContext().request_id

    def test_actor(self):
        assert RequestContext().actor is None

        actor = RequestContext(user_id="u-1", role="nurse").actor
        assert actor.user_id == "u-1"
        assert actor.role == "nurse"

    def test_user_agent_truncated(self):
        context = RequestContext(user_agent="x" * (MAX_USER_AGENT_LENGTH + 50))

        assert len(context.user_agent) == MAX_USER_AGENT_LENGTH

    def test_set_and_reset(self):
        assert get_request_context() is None

        context = RequestContext(request_id="req-1")
        token = set_request_context(context)
        try:
            assert get_request_context() is context
        finally:
            reset_request_context(token)

        assert get_request_context() is None


class TestClientIp:
    """Test client IP resolution order."""

    @pytest.mark.parametrize("headers,expected", [
        ({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}, "198.51.100.1"),
        ({"X-Real-IP": " 198.51.100.2 "}, "198.51.100.2"),
        ({"X-Forwarded-For": "198.51.100.1", "X-Real-IP": "198.51.100.2"}, "198.51.100.1"),
        ({}, "203.0.113.9"),
    ])
    def test_resolution(self, headers, expected):
        assert get_client_ip(make_request(headers)) == expected

    def test_unknown_without_peer(self):
        assert get_client_ip(make_request(client=None)) == "unknown"


class TestRequestContextMiddleware:
    """Test the middleware on a minimal app."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)

        @app.get("/whoami")
        async def whoami():
            context = get_request_context()
            return {
                "request_id": context.request_id,
                "user_id": context.user_id,
                "role": context.role,
                "ip": context.ip_address,
            }

        return TestClient(app)

    def test_request_id_generated_and_echoed(self, client):
        response = client.get("/whoami")

        assert response.headers[HEADER_REQUEST_ID] == response.json()["request_id"]
        assert float(response.headers[HEADER_RESPONSE_TIME]) >= 0

    def test_request_id_propagated(self, client):
        response = client.get("/whoami", headers={"X-Request-ID": "req-42"})

        assert response.json()["request_id"] == "req-42"
        assert response.headers[HEADER_REQUEST_ID] == "req-42"

    def test_actor_and_ip_headers(self, client):
        response = client.get("/whoami", headers={
            "X-User-ID": "17",
            "X-User-Role": "physician",
            "X-Forwarded-For": "198.51.100.7",
        })

        assert response.json() == {
            "request_id": response.headers[HEADER_REQUEST_ID],
            "user_id": "17",
            "role": "physician",
            "ip": "198.51.100.7",
        }

    def test_actor_headers_ignored_when_untrusted(self):
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware, trust_actor_headers=False)

        @app.get("/whoami")
        async def whoami():
            return {"user_id": get_request_context().user_id}

        response = TestClient(app).get("/whoami", headers={"X-User-ID": "17"})

        assert response.json() == {"user_id": None}
