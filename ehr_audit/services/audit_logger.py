"""
EHR Audit Logger

Domain-level audit events (encounters, PHI access, CRUD, authentication,
security) written to hash-chained channels through an AuditTrail.

Every method returns the AppendResult and none of them raise: audit
failures never decide the outcome of the business operation being logged.
"""

import hashlib
import hmac
import logging
import re
import time
from typing import Any, Iterable, Optional, Union

from ehr_audit.chain.models import (
    Actor,
    AppendResult,
    Channel,
    LogLevel,
    Operation,
    Outcome,
    Subject,
)
from ehr_audit.chain.trail import AuditTrail
from ehr_audit.context import get_request_context

logger = logging.getLogger(__name__)

UserId = Union[int, str]

_NON_DIGITS = re.compile(r"[^0-9]")


def hash_identifier(value: Any, salt: str) -> str:
    """One-way, salted hash of an identifier (correlation only)."""
    return hmac.new(salt.encode("utf-8"), str(value).encode("utf-8"), hashlib.sha256).hexdigest()


def calculate_modified_fields(old_values: dict, new_values: dict) -> list[str]:
    """
    Field names whose values differ between two snapshots.

    Added and changed fields come first in new_values order, then fields
    that were removed, in old_values order.
    """
    modified = [
        key for key, value in new_values.items()
        if key not in old_values or old_values[key] != value
    ]
    modified.extend(key for key in old_values if key not in new_values)
    return modified


def _elapsed_ms(start_time: Optional[float]) -> Optional[int]:
    if start_time is None:
        return None
    return int((time.monotonic() - start_time) * 1000)


class AuditLogger:
    """
    Writes EHR audit events.

    Actor, IP, user agent and request id come from the current
    RequestContext unless given explicitly.

    Usage:
        audit = AuditLogger(trail, phi_hash_salt=settings.phi_hash_salt)
        audit.log_encounter_signed("enc-42", signed_by=7)
        audit.log_phi_access(patient_id="p-1", access_type="view", fields_accessed=["dob"])
    """

    def __init__(self, trail: AuditTrail, phi_hash_salt: str):
        """
        Initialize Audit Logger.

        Args:
            trail: Audit trail to append to
            phi_hash_salt: Secret for hashing patient ids, emails and phones
        """
        self.trail = trail
        self.phi_hash_salt = phi_hash_salt

    def log(
        self,
        channel: Union[Channel, str],
        operation: Union[Operation, str],
        level: Union[LogLevel, str] = LogLevel.INFO,
        subject: Optional[Subject] = None,
        details: Optional[dict] = None,
        status: str = "success",
        error_message: Optional[str] = None,
        patient_id: Any = None,
        user_id: Optional[UserId] = None,
        duration_ms: Optional[int] = None,
    ) -> AppendResult:
        """
        Log an audit event.

        Args:
            channel: Target channel
            operation: Action performed
            level: Severity/category tag
            subject: Entity acted upon
            details: Additional event details (redacted before storage)
            status: Outcome status (success, failure, blocked, logged)
            error_message: Error details if failed
            patient_id: Patient identifier; only its salted hash is logged
            user_id: Acting user, overriding the request context
            duration_ms: Operation duration

        Returns:
            AppendResult
        """
        channel_name = channel.value if isinstance(channel, Channel) else str(channel)
        try:
            event_details = dict(details or {})
            if patient_id is not None:
                event_details["patient_id_hash"] = self.hash_patient_id(patient_id)

            context = get_request_context()
            return self.trail.append(
                channel_name,
                operation=operation,
                level=level,
                actor=self._actor(user_id),
                subject=subject,
                details=event_details,
                result=Outcome(status=status, error_message=error_message),
                request_id=context.request_id if context else None,
                ip_address=context.ip_address if context else None,
                user_agent=context.user_agent if context else None,
                duration_ms=duration_ms,
            )
        except Exception as e:
            logger.error(f"Audit event {operation} on channel={channel_name} not logged: {type(e).__name__}")
            return AppendResult(channel=channel_name, written=False, error=f"{type(e).__name__}: {e}")

    def hash_patient_id(self, patient_id: Any) -> str:
        return hash_identifier(patient_id, self.phi_hash_salt)

    def _actor(self, user_id: Optional[UserId]) -> Optional[Actor]:
        context = get_request_context()
        if user_id is None:
            return context.actor if context else None
        return Actor(user_id=user_id, role=context.role if context else None)

    # ==================================
    # Generic Operations
    # ==================================

    def log_operation(
        self,
        operation: Union[Operation, str],
        channel: Union[Channel, str] = Channel.EHR,
        encounter_id: Optional[str] = None,
        patient_id: Any = None,
        details: Optional[dict] = None,
        status: str = "success",
        start_time: Optional[float] = None,
    ) -> AppendResult:
        """
        Log an EHR operation.

        Args:
            operation: Action performed
            channel: Target channel
            encounter_id: Encounter the operation belongs to
            patient_id: Patient identifier (hashed)
            details: Additional details
            status: Outcome status
            start_time: time.monotonic() at operation start, for duration_ms
        """
        return self.log(
            channel,
            operation,
            subject=Subject(type="Encounter", id=encounter_id) if encounter_id else None,
            details=details,
            status=status,
            patient_id=patient_id,
            duration_ms=_elapsed_ms(start_time),
        )

    def log_phi_access(
        self,
        patient_id: Any,
        access_type: str,
        fields_accessed: Optional[list[str]] = None,
        purpose: str = "treatment",
        user_id: Optional[UserId] = None,
    ) -> AppendResult:
        """Log PHI access (view, export, print...). Field names only, never values."""
        fields_accessed = list(fields_accessed or [])
        return self.log(
            Channel.PHI_ACCESS,
            Operation.PHI_ACCESS,
            level=LogLevel.AUDIT,
            subject=Subject(type="Patient"),
            details={
                "access_type": access_type,
                "fields_accessed": fields_accessed,
                "fields_count": len(fields_accessed),
                "purpose": purpose,
            },
            status="logged",
            patient_id=patient_id,
            user_id=user_id,
        )

    def log_error(
        self,
        operation: Union[Operation, str],
        error_message: str,
        channel: Union[Channel, str] = Channel.EHR,
        context: Optional[dict] = None,
    ) -> AppendResult:
        """Log an error during an EHR operation."""
        return self.log(
            channel,
            operation,
            level=LogLevel.ERROR,
            details={"context": context or {}},
            status="failure",
            error_message=error_message,
        )

    # ==================================
    # Encounter Lifecycle
    # ==================================

    def log_encounter_created(self, encounter_id: str, patient_id: Any = None, details: Optional[dict] = None) -> AppendResult:
        return self.log_operation(
            Operation.CREATE,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            patient_id=patient_id,
            details={**(details or {}), "action": "encounter_created"},
        )

    def log_encounter_read(self, encounter_id: str, patient_id: Any = None) -> AppendResult:
        return self.log_operation(
            Operation.READ,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            patient_id=patient_id,
            details={"action": "encounter_read"},
        )

    def log_encounter_updated(self, encounter_id: str, fields_updated: Optional[list[str]] = None) -> AppendResult:
        fields_updated = list(fields_updated or [])
        return self.log_operation(
            Operation.UPDATE,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            details={
                "action": "encounter_updated",
                "fields_updated": fields_updated,
                "fields_count": len(fields_updated),
            },
        )

    def log_encounter_deleted(self, encounter_id: str, reason: str = "") -> AppendResult:
        return self.log_operation(
            Operation.DELETE,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            details={"action": "encounter_deleted", "reason": reason},
        )

    def log_vitals_recorded(self, encounter_id: str, vitals: Optional[dict] = None) -> AppendResult:
        """Log vitals recording. Only the vital names are logged, never values."""
        vital_fields = list(vitals or {})
        return self.log_operation(
            Operation.UPDATE,
            Channel.VITALS,
            encounter_id=encounter_id,
            details={
                "action": "vitals_recorded",
                "vitals_fields": vital_fields,
                "vitals_count": len(vital_fields),
            },
        )

    def log_assessment_added(self, encounter_id: str, assessment: Optional[dict] = None) -> AppendResult:
        assessment = assessment or {}
        return self.log_operation(
            Operation.UPDATE,
            Channel.ASSESSMENT,
            encounter_id=encounter_id,
            details={
                "action": "assessment_added",
                "has_diagnosis": bool(assessment.get("diagnosis") or assessment.get("assessment")),
                "icd_codes_count": len(assessment.get("icd_codes") or []),
            },
        )

    def log_treatment_added(self, encounter_id: str, treatment: Optional[dict] = None) -> AppendResult:
        treatment = treatment or {}
        return self.log_operation(
            Operation.UPDATE,
            Channel.TREATMENT,
            encounter_id=encounter_id,
            details={
                "action": "treatment_added",
                "has_plan": bool(treatment.get("plan") or treatment.get("treatment_plan")),
                "cpt_codes_count": len(treatment.get("cpt_codes") or []),
                "medications_count": len(treatment.get("medications") or []),
                "procedures_count": len(treatment.get("procedures") or []),
            },
        )

    def log_signature_added(self, encounter_id: str, signature_type: str, signed_by: UserId) -> AppendResult:
        return self.log_operation(
            Operation.SIGN,
            Channel.SIGNATURE,
            encounter_id=encounter_id,
            details={
                "action": "signature_added",
                "signature_type": signature_type,
                "signed_by": signed_by,
            },
        )

    def log_encounter_signed(self, encounter_id: str, signed_by: UserId) -> AppendResult:
        return self.log_operation(
            Operation.SIGN,
            Channel.SIGNATURE,
            encounter_id=encounter_id,
            details={"action": "encounter_signed", "signed_by": signed_by, "locked": True},
        )

    def log_encounter_amended(self, encounter_id: str, reason: str, amended_by: UserId) -> AppendResult:
        redactor = self.trail.appender.redactor_for(Channel.ENCOUNTER.value)
        return self.log_operation(
            Operation.AMEND,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            details={
                "action": "encounter_amended",
                "amendment_reason": redactor.redact_text(reason),
                "amended_by": amended_by,
            },
        )

    def log_status_transition(
        self,
        encounter_id: str,
        from_status: str,
        to_status: str,
        reason: str = "",
    ) -> AppendResult:
        return self.log_operation(
            Operation.STATUS_TRANSITION,
            Channel.ENCOUNTER,
            encounter_id=encounter_id,
            details={
                "action": "status_transition",
                "from_status": from_status,
                "to_status": to_status,
                "transition_reason": reason,
            },
        )

    def log_finalization(
        self,
        encounter_id: str,
        success: bool,
        validation_errors: Optional[list[str]] = None,
        validation_warnings: Optional[list[str]] = None,
        previous_status: Optional[str] = None,
        is_work_related: bool = False,
        start_time: Optional[float] = None,
    ) -> AppendResult:
        """Log an encounter finalization attempt with its validation outcome."""
        return self.log(
            Channel.FINALIZATION,
            Operation.FINALIZE,
            level=LogLevel.INFO if success else LogLevel.WARNING,
            subject=Subject(type="Encounter", id=encounter_id),
            details={
                "action": "encounter_finalized",
                "validation_passed": success,
                "validation_errors": [] if success else list(validation_errors or []),
                "validation_warnings": list(validation_warnings or []),
                "is_work_related": is_work_related,
                "status_changed_from": previous_status,
                "status_changed_to": "finalized",
            },
            status="success" if success else "failure",
            duration_ms=_elapsed_ms(start_time),
        )

    # ==================================
    # Notifications
    # ==================================

    def log_email_notification(
        self,
        encounter_id: str,
        recipients: Iterable[str],
        success: bool,
        error_message: str = "",
        notification_type: str = "work_related_incident",
    ) -> AppendResult:
        """Log an email notification. Recipients are logged as salted hashes."""
        recipient_hashes = [
            hash_identifier(email.strip().lower(), self.phi_hash_salt) for email in recipients
        ]
        return self.log(
            Channel.FINALIZATION,
            Operation.SEND_EMAIL,
            level=LogLevel.INFO if success else LogLevel.ERROR,
            subject=Subject(type="Encounter", id=encounter_id),
            details={
                "action": "email_notification",
                "recipient_count": len(recipient_hashes),
                "recipient_hashes": recipient_hashes,
                "notification_type": notification_type,
            },
            status="success" if success else "failure",
            error_message=None if success else error_message,
        )

    def log_sms_reminder(
        self,
        encounter_id: str,
        phone_number: str,
        success: bool,
        error_message: str = "",
        reminder_type: str = "follow_up",
    ) -> AppendResult:
        """Log an SMS reminder. The phone number is logged as a salted hash of its digits."""
        return self.log(
            Channel.FINALIZATION,
            Operation.SEND_SMS,
            level=LogLevel.INFO if success else LogLevel.ERROR,
            subject=Subject(type="Encounter", id=encounter_id),
            details={
                "action": "sms_reminder",
                "phone_hash": hash_identifier(_NON_DIGITS.sub("", phone_number), self.phi_hash_salt),
                "reminder_type": reminder_type,
            },
            status="success" if success else "failure",
            error_message=None if success else error_message,
        )

    # ==================================
    # CRUD
    # ==================================

    def log_create(
        self,
        resource_type: str,
        resource_id: Any,
        new_values: Optional[dict] = None,
        patient_id: Any = None,
        description: str = "",
    ) -> AppendResult:
        new_values = new_values or {}
        return self.log(
            Channel.AUDIT,
            Operation.CREATE,
            level=LogLevel.AUDIT,
            subject=Subject(type=resource_type, id=resource_id),
            details={
                "description": description or f"Created {resource_type} record",
                "modified_fields": list(new_values),
                "new_values": new_values,
            },
            patient_id=patient_id,
        )

    def log_read(
        self,
        resource_type: str,
        resource_id: Any,
        patient_id: Any = None,
        description: str = "",
    ) -> AppendResult:
        return self.log(
            Channel.AUDIT,
            Operation.READ,
            level=LogLevel.AUDIT,
            subject=Subject(type=resource_type, id=resource_id),
            details={"description": description or f"Accessed {resource_type} record"},
            patient_id=patient_id,
        )

    def log_update(
        self,
        resource_type: str,
        resource_id: Any,
        old_values: dict,
        new_values: dict,
        modified_fields: Optional[list[str]] = None,
        patient_id: Any = None,
        description: str = "",
    ) -> AppendResult:
        """
        Log an update.

        modified_fields is computed from the two snapshots when not given.
        """
        if modified_fields is None:
            modified_fields = calculate_modified_fields(old_values, new_values)
        return self.log(
            Channel.AUDIT,
            Operation.UPDATE,
            level=LogLevel.AUDIT,
            subject=Subject(type=resource_type, id=resource_id),
            details={
                "description": description or f"Updated {resource_type} record",
                "modified_fields": list(modified_fields),
                "old_values": old_values,
                "new_values": new_values,
            },
            patient_id=patient_id,
        )

    def log_delete(
        self,
        resource_type: str,
        resource_id: Any,
        old_values: Optional[dict] = None,
        patient_id: Any = None,
        description: str = "",
    ) -> AppendResult:
        old_values = old_values or {}
        return self.log(
            Channel.AUDIT,
            Operation.DELETE,
            level=LogLevel.AUDIT,
            subject=Subject(type=resource_type, id=resource_id),
            details={
                "description": description or f"Deleted {resource_type} record",
                "modified_fields": list(old_values),
                "old_values": old_values,
            },
            patient_id=patient_id,
        )

    def log_failure(
        self,
        operation: Union[Operation, str],
        resource_type: str,
        resource_id: Any = None,
        error_message: str = "",
        patient_id: Any = None,
        details: Optional[dict] = None,
    ) -> AppendResult:
        """Log an operation that failed."""
        op = operation.value if isinstance(operation, Operation) else operation
        return self.log(
            Channel.AUDIT,
            operation,
            level=LogLevel.WARNING,
            subject=Subject(type=resource_type, id=resource_id),
            details={**(details or {}), "description": f"Failed to {str(op).lower()} {resource_type}"},
            status="failure",
            error_message=error_message,
            patient_id=patient_id,
        )

    def log_search(
        self,
        resource_type: str,
        criteria: Optional[dict] = None,
        result_count: int = 0,
        description: str = "",
    ) -> AppendResult:
        return self.log(
            Channel.AUDIT,
            Operation.SEARCH,
            level=LogLevel.AUDIT,
            subject=Subject(type=resource_type),
            details={
                "description": description or f"Searched {resource_type} records",
                "criteria": criteria or {},
                "result_count": result_count,
            },
        )

    # ==================================
    # Authentication & Security
    # ==================================

    def log_login(self, user_id: UserId, success: bool = True) -> AppendResult:
        return self.log(
            Channel.AUTH,
            Operation.LOGIN_SUCCESS if success else Operation.LOGIN_FAILED,
            level=LogLevel.INFO if success else LogLevel.WARNING,
            subject=Subject(type="User", id=user_id),
            status="success" if success else "failure",
            user_id=user_id if success else None,
        )

    def log_logout(self, user_id: UserId) -> AppendResult:
        return self.log(
            Channel.AUTH,
            Operation.LOGOUT,
            subject=Subject(type="User", id=user_id),
            user_id=user_id,
        )

    def log_failed_login(self, username: str, reason: str = "", user_id: Optional[UserId] = None) -> AppendResult:
        """Log a failed login. The username itself is logged as a salted hash."""
        return self.log(
            Channel.AUTH,
            Operation.LOGIN_FAILED,
            level=LogLevel.WARNING,
            subject=Subject(type="User", id=user_id),
            details={
                "username_hash": hash_identifier(username.strip().lower(), self.phi_hash_salt),
                "reason": reason,
            },
            status="failure",
        )

    def log_access_denied(
        self,
        resource_type: str,
        resource_id: Any = None,
        reason: str = "",
        patient_id: Any = None,
    ) -> AppendResult:
        return self.log(
            Channel.SECURITY,
            Operation.ACCESS_DENIED,
            level=LogLevel.WARNING,
            subject=Subject(type=resource_type, id=resource_id),
            details={"reason": reason},
            status="blocked",
            error_message=f"Access denied: {reason}" if reason else "Access denied",
            patient_id=patient_id,
        )

    def log_security_event(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: Union[LogLevel, str] = LogLevel.WARNING,
        operation: Union[Operation, str] = Operation.SECURITY_EVENT,
    ) -> AppendResult:
        return self.log(
            Channel.SECURITY,
            operation,
            level=level,
            subject=Subject(type="System", id=event_type),
            details={"event_type": event_type, **(data or {})},
            status="logged",
        )
