"""
Audit logging facades.

Domain-level helpers on top of the AuditTrail: clinical/auth/security
events, dashboard performance events and brute force login monitoring.
"""

from ehr_audit.services.audit_logger import AuditLogger, calculate_modified_fields, hash_identifier
from ehr_audit.services.dashboard_logger import DashboardLogger
from ehr_audit.services.login_monitor import LoginAttemptResult, LoginMonitor

__all__ = [
    # Clinical / auth / security
    "AuditLogger",
    "calculate_modified_fields",
    "hash_identifier",
    # Dashboards
    "DashboardLogger",
    # Brute force
    "LoginMonitor",
    "LoginAttemptResult",
]
