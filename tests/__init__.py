"""
EHR Audit Tests

Running Tests:
    # Run everything
    pytest -v

    # Unit tests only
    pytest tests/unit -v

    # API integration tests
    pytest tests/test_audit_api.py -v

Test Coverage:
    - PHI redaction
    - Canonical serialization and hashing
    - Hash-chain append, verification and archival
    - Statistics and queries
    - Audit, dashboard and login monitor facades
    - Request context and HTTP API
"""
