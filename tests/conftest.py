"""Shared fixtures."""

import pytest

from ehr_audit.chain.redactor import DASHBOARD_RULESET, Redactor
from ehr_audit.chain.trail import AuditTrail
from ehr_audit.context import RequestContext, reset_request_context, set_request_context


@pytest.fixture
def log_dir(tmp_path):
    """Empty log directory."""
    return tmp_path / "logs"


@pytest.fixture
def trail(log_dir):
    """AuditTrail over a fresh directory, without fsync."""
    return AuditTrail(
        log_dir,
        channel_redactors={"dashboard": Redactor(DASHBOARD_RULESET)},
        fsync=False,
    )


@pytest.fixture
def request_context():
    """Set a RequestContext for the test, then restore the previous one."""
    tokens = []

    def _set(**kwargs):
        context = RequestContext(**kwargs)
        tokens.append(set_request_context(context))
        return context

    yield _set

    for token in reversed(tokens):
        reset_request_context(token)
