"""
PHI Redaction Module

Strips protected health information from log payloads before they are
hashed and written. Redaction is rule-based so that the same payload
always redacts to the same output:

1. Field names in the PHI set are replaced wholesale with a marker
2. String values are scanned with Presidio pattern recognizers (SSN,
   phone, email, dates, MRN) applied in a fixed order, and matches are
   replaced by the anonymizer with a per-kind marker

No NLP engine is loaded: only regex recognizers run, so output does not
depend on a language model.

Redaction is recursive over nested mappings/sequences and idempotent.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from presidio_analyzer import Pattern, PatternRecognizer
from presidio_anonymizer import AnonymizerEngine
from presidio_anonymizer.entities import OperatorConfig

from ehr_audit.chain.exceptions import RedactionFailure
from ehr_audit.chain.models import DetailValue, to_valid_utf8

logger = logging.getLogger(__name__)


# ==================================
# Configuration
# ==================================

REDACTION_MARKER = "[REDACTED]"

# Free text longer than this is truncated by redact_text()
MAX_TEXT_LENGTH = 2000

# Field names whose values are always redacted (compared lower-cased)
PHI_FIELDS = frozenset({
    "patient_name", "first_name", "last_name", "full_name", "middle_name",
    "ssn", "social_security", "social_security_number",
    "dob", "date_of_birth", "birth_date",
    "address", "street", "city", "zip", "zipcode", "postal_code",
    "phone", "phone_number", "mobile", "cell", "home_phone", "work_phone",
    "email", "email_address",
    "mrn", "medical_record_number",
    "insurance_id", "policy_number", "group_number", "member_id",
    "drivers_license", "license_number",
    "employer_name", "company_name",
})


@dataclass(frozen=True)
class ContentPattern:
    """
    A content rule: one or more regexes sharing a replacement marker.

    Each rule becomes a Presidio PatternRecognizer whose entity type is
    the upper-cased rule name.
    """
    name: str
    regexes: tuple[str, ...]
    marker: str
    score: float = 0.9

    @property
    def entity(self) -> str:
        return self.name.upper()

    def recognizer(self) -> PatternRecognizer:
        patterns = [
            Pattern(name=f"{self.name}_pattern_{i}", regex=regex, score=self.score)
            for i, regex in enumerate(self.regexes, start=1)
        ]
        return PatternRecognizer(supported_entity=self.entity, name=f"{self.name}_recognizer", patterns=patterns)


# Applied in this order; markers never match a later pattern
PHI_PATTERNS: tuple[ContentPattern, ...] = (
    ContentPattern(
        name="ssn",
        regexes=(r"\b\d{3}-\d{2}-\d{4}\b",),
        marker="[SSN-REDACTED]",
    ),
    ContentPattern(
        name="phone",
        regexes=(r"\b\d{3}-\d{3}-\d{4}\b", r"\(\d{3}\)\s?\d{3}-\d{4}\b"),
        marker="[PHONE-REDACTED]",
    ),
    ContentPattern(
        name="email",
        regexes=(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",),
        marker="[EMAIL-REDACTED]",
    ),
    ContentPattern(
        name="date",
        regexes=(
            r"\b(?:0[1-9]|1[0-2])[-/](?:0[1-9]|[12][0-9]|3[01])[-/](?:19|20)\d{2}\b",
            r"\b(?:19|20)\d{2}[-/](?:0[1-9]|1[0-2])[-/](?:0[1-9]|[12][0-9]|3[01])\b",
        ),
        marker="[DATE-REDACTED]",
    ),
    ContentPattern(
        name="mrn",
        regexes=(r"\bMRN[-:#\s]?\s*\d{5,10}\b",),
        marker="[MRN-REDACTED]",
    ),
)

# Control characters (except newline, tab, carriage return)
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


# ==================================
# Ruleset
# ==================================

@dataclass(frozen=True)
class RedactionRuleset:
    """Field names and content patterns a Redactor enforces."""
    field_names: frozenset = PHI_FIELDS
    patterns: tuple[ContentPattern, ...] = PHI_PATTERNS
    marker: str = REDACTION_MARKER

    def extend(
        self,
        field_names: Iterable[str] = (),
        patterns: Iterable[ContentPattern] = (),
    ) -> "RedactionRuleset":
        """Return a ruleset with extra field names and trailing patterns."""
        return RedactionRuleset(
            field_names=self.field_names | {name.lower() for name in field_names},
            patterns=self.patterns + tuple(patterns),
            marker=self.marker,
        )


DEFAULT_RULESET = RedactionRuleset()

# Dashboard filters and contexts may also carry credentials and raw patient ids
DASHBOARD_RULESET = DEFAULT_RULESET.extend(
    field_names=("password", "token", "secret", "api_key", "patient_id"),
)


# ==================================
# Redactor Class
# ==================================

@dataclass
class Redactor:
    """
    Rule-based PHI redactor.

    Usage:
        redactor = Redactor()
        redactor.redact({"patient_name": "Jane Doe", "note": "call 555-123-4567"})
        # {"patient_name": "[REDACTED]", "note": "call [PHONE-REDACTED]"}
    """

    ruleset: RedactionRuleset = field(default_factory=lambda: DEFAULT_RULESET)
    _recognizers: list[tuple[ContentPattern, PatternRecognizer]] = field(init=False, repr=False, compare=False)
    _anonymizer: AnonymizerEngine = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._recognizers = [(pattern, pattern.recognizer()) for pattern in self.ruleset.patterns]
        self._anonymizer = AnonymizerEngine()
        validate_ruleset(self.ruleset, self._recognizers)

    def redact(self, payload: Any) -> dict[str, DetailValue]:
        """
        Redact a details payload.

        Never raises. If the payload cannot be walked, every top-level
        key is replaced with the marker rather than risk leaking.

        Args:
            payload: Mapping of details to be logged

        Returns:
            Structurally identical dict with PHI replaced by markers
        """
        if payload is None:
            return {}

        try:
            if not isinstance(payload, Mapping):
                return {"value": self._redact_value(payload)}
            return self._redact_mapping(payload)
        except Exception as e:
            logger.error(f"Redaction failed, falling back to coarse redaction: {type(e).__name__}")
            return self._coarse_redact(payload)

    def redact_text(self, text: Optional[str], max_length: int = MAX_TEXT_LENGTH) -> Optional[str]:
        """Apply content patterns, drop control characters and truncate."""
        if text is None:
            return None
        cleaned = CONTROL_CHAR_PATTERN.sub("", str(text))
        return self._redact_string(cleaned)[:max_length]

    def is_phi_field(self, key: Any) -> bool:
        return str(key).strip().lower() in self.ruleset.field_names

    def _redact_mapping(self, data: Mapping) -> dict[str, DetailValue]:
        redacted: dict[str, DetailValue] = {}
        for key, value in data.items():
            str_key = to_valid_utf8(str(key))
            if self.is_phi_field(str_key):
                redacted[str_key] = self.ruleset.marker
                continue
            redacted[str_key] = self._redact_value(value)
        return redacted

    def _redact_value(self, value: Any) -> DetailValue:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, str):
            return self._redact_string(value)
        if isinstance(value, Mapping):
            return self._redact_mapping(value)
        if isinstance(value, (list, tuple, set, frozenset)):
            items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
            return [self._redact_value(item) for item in items]
        # Anything else (datetime, UUID, Decimal, objects) is logged as text
        return self._redact_string(str(value))

    def _redact_string(self, value: str) -> str:
        value = to_valid_utf8(value)
        for pattern, recognizer in self._recognizers:
            results = recognizer.analyze(text=value, entities=[pattern.entity])
            if not results:
                continue
            value = self._anonymizer.anonymize(
                text=value,
                analyzer_results=results,
                operators={pattern.entity: OperatorConfig("replace", {"new_value": pattern.marker})},
            ).text
        return value

    def _coarse_redact(self, payload: Any) -> dict[str, DetailValue]:
        try:
            return {to_valid_utf8(str(key)): self.ruleset.marker for key in payload}
        except Exception:
            return {"details": self.ruleset.marker}


def validate_ruleset(
    ruleset: RedactionRuleset,
    recognizers: Optional[list[tuple[ContentPattern, PatternRecognizer]]] = None,
) -> None:
    """
    Reject rulesets whose markers would be re-matched by their own patterns.

    Such a ruleset would redact its own output again and lose idempotence.

    Raises:
        RedactionFailure: If any marker matches any content pattern
    """
    if recognizers is None:
        recognizers = [(pattern, pattern.recognizer()) for pattern in ruleset.patterns]

    markers = [ruleset.marker] + [pattern.marker for pattern in ruleset.patterns]
    for marker in markers:
        for pattern, recognizer in recognizers:
            if recognizer.analyze(text=marker, entities=[pattern.entity]):
                raise RedactionFailure(
                    f"Marker {marker!r} is matched by pattern {pattern.name!r}"
                )
