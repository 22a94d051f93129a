"""
Brute Force Login Monitor

Counts failed logins per username+IP in a shared counter store and raises
a BRUTE_FORCE_ATTEMPT alert on the security channel once the count reaches
the threshold inside one window.
"""

import asyncio
import hashlib
import logging
from typing import Optional, Union

from pydantic import BaseModel

from ehr_audit.chain.models import AppendResult, LogLevel, Operation
from ehr_audit.context import get_request_context
from ehr_audit.infra.redis import AttemptCounterStore
from ehr_audit.services.audit_logger import AuditLogger, hash_identifier

logger = logging.getLogger(__name__)


class LoginAttemptResult(BaseModel):
    """Outcome of recording a failed login."""
    attempts: int
    threshold: int
    brute_force_detected: bool = False
    logged: AppendResult
    alert: Optional[AppendResult] = None


def attempt_key(username: str, ip_address: Optional[str]) -> str:
    """Counter id for a username+IP pair; neither is stored in clear."""
    raw = f"{username.strip().lower()}|{ip_address or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class LoginMonitor:
    """
    Failed-login tracking with brute force alerts.

    Usage:
        monitor = LoginMonitor(audit, AttemptCounterStore(redis_client), threshold=5)
        result = await monitor.record_failed_login("jdoe", reason="bad password")
        if result.brute_force_detected:
            ...
    """

    def __init__(
        self,
        audit: AuditLogger,
        counters: AttemptCounterStore,
        threshold: int = 5,
    ):
        """
        Initialize LoginMonitor.

        Args:
            audit: Audit logger for auth and security events
            counters: Shared attempt counter store
            threshold: Failed attempts per window that trigger an alert
        """
        self.audit = audit
        self.counters = counters
        self.threshold = threshold

    @staticmethod
    def _client_ip(ip_address: Optional[str]) -> Optional[str]:
        if ip_address:
            return ip_address
        context = get_request_context()
        return context.ip_address if context else None

    async def record_failed_login(
        self,
        username: str,
        reason: str = "",
        ip_address: Optional[str] = None,
        user_id: Optional[Union[int, str]] = None,
    ) -> LoginAttemptResult:
        """
        Log a failed login and check for brute force.

        Every attempt at or above the threshold inside the window raises
        an alert.

        Args:
            username: Username tried
            reason: Why the login failed
            ip_address: Client IP (defaults to the request context)
            user_id: Known user id, if the username exists

        Returns:
            LoginAttemptResult
        """
        ip_address = self._client_ip(ip_address)

        logged = await asyncio.to_thread(self.audit.log_failed_login, username, reason, user_id)
        attempts = await self.counters.increment(attempt_key(username, ip_address))

        result = LoginAttemptResult(attempts=attempts, threshold=self.threshold, logged=logged)
        if attempts < self.threshold:
            return result

        logger.warning(f"Brute force suspected: {attempts} failed logins from ip={ip_address}")
        result.brute_force_detected = True
        result.alert = await asyncio.to_thread(
            self.audit.log_security_event,
            "BRUTE_FORCE_ATTEMPT",
            {
                "username_hash": hash_identifier(username.strip().lower(), self.audit.phi_hash_salt),
                "attempts": attempts,
                "threshold": self.threshold,
                "window_seconds": self.counters.window_seconds,
                "ip": ip_address,
            },
            LogLevel.CRITICAL,
            Operation.BRUTE_FORCE_ATTEMPT,
        )
        return result

    async def record_successful_login(
        self,
        username: str,
        user_id: Union[int, str],
        ip_address: Optional[str] = None,
    ) -> AppendResult:
        """Log a successful login and clear its failed-attempt counter."""
        ip_address = self._client_ip(ip_address)
        await self.counters.reset(attempt_key(username, ip_address))
        return await asyncio.to_thread(self.audit.log_login, user_id, True)

    async def failed_attempts(self, username: str, ip_address: Optional[str] = None) -> int:
        return await self.counters.get_count(attempt_key(username, self._client_ip(ip_address)))

    async def is_blocked(self, username: str, ip_address: Optional[str] = None) -> bool:
        """True once the username+IP pair reached the threshold in this window."""
        return await self.failed_attempts(username, ip_address) >= self.threshold
