"""
Request Context

Who is acting, from where, under which request id. Set once per request by
RequestContextMiddleware and read by the audit facades, so call sites do not
have to thread actor/IP/user agent through every logging call.
"""

from contextvars import ContextVar, Token
from typing import Optional, Union
from uuid import uuid4

from ehr_audit.chain.models import Actor

# User agents are truncated before logging
MAX_USER_AGENT_LENGTH = 500

# ContextVar for request context (accessible anywhere without passing)
_request_context: ContextVar[Optional["RequestContext"]] = ContextVar(
    "request_context",
    default=None
)


class RequestContext:
    """
    Request-scoped audit context.

    Available anywhere via get_request_context() inside a request.
    """

    def __init__(
        self,
        request_id: Optional[str] = None,
        user_id: Optional[Union[int, str]] = None,
        role: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.request_id = request_id or str(uuid4())
        self.user_id = user_id
        self.role = role
        self.ip_address = ip_address
        self.user_agent = user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None

    @property
    def actor(self) -> Optional[Actor]:
        """Actor for log records, or None when nobody is signed in."""
        if self.user_id is None and self.role is None:
            return None
        return Actor(user_id=self.user_id, role=self.role)

    def __repr__(self) -> str:
        return f"<RequestContext(request_id={self.request_id}, user_id={self.user_id}, role={self.role})>"


def get_request_context() -> Optional[RequestContext]:
    """
    Get current request context or None.

    Usage:
        context = get_request_context()
        if context:
            print(context.request_id)
    """
    return _request_context.get()


def set_request_context(context: Optional[RequestContext]) -> Token:
    """Set request context; pass the returned token to reset_request_context()."""
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)
