"""
Request Context Middleware

Builds a RequestContext for every request: request id (generated when the
client sends none, always echoed back), actor headers and client IP.
"""

import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ehr_audit.context import RequestContext, reset_request_context, set_request_context

logger = logging.getLogger(__name__)

HEADER_REQUEST_ID = "X-Request-ID"
HEADER_USER_ID = "X-User-ID"
HEADER_USER_ROLE = "X-User-Role"
HEADER_RESPONSE_TIME = "X-Response-Time-Ms"


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, honoring proxy headers."""
    # Check forwarded headers (for proxies)
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets the request context for the duration of each request.

    Usage:
        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)
    """

    def __init__(self, app: ASGIApp, trust_actor_headers: bool = True):
        """
        Initialize RequestContextMiddleware.

        Args:
            app: ASGI application
            trust_actor_headers: Read the actor from X-User-ID / X-User-Role
                (set by an authenticating proxy in front of this service)
        """
        super().__init__(app)
        self.trust_actor_headers = trust_actor_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(HEADER_REQUEST_ID) or str(uuid4())

        user_id: Optional[str] = None
        role: Optional[str] = None
        if self.trust_actor_headers:
            user_id = request.headers.get(HEADER_USER_ID) or None
            role = request.headers.get(HEADER_USER_ROLE) or None

        context = RequestContext(
            request_id=request_id,
            user_id=user_id,
            role=role,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        request.state.request_context = context
        request.state.request_id = request_id

        start = time.time()
        token = set_request_context(context)
        try:
            response = await call_next(request)
        finally:
            reset_request_context(token)

        response.headers[HEADER_REQUEST_ID] = request_id
        response.headers[HEADER_RESPONSE_TIME] = str(round((time.time() - start) * 1000, 2))
        return response


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", None) or str(uuid4())
