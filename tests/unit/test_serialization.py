"""Tests for canonical serialization and chain hashing."""

import hashlib
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from ehr_audit.chain.models import RECORD_FIELDS, Actor, LogRecord, Subject
from ehr_audit.chain.serialization import (
    GENESIS_HASH,
    compute_hash,
    parse_line,
    serialize,
    to_line,
)


@pytest.fixture
def record():
    return LogRecord(
        timestamp=datetime(2024, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc),
        channel="audit",
        level="AUDIT",
        operation="READ",
        actor=Actor(user_id=7, role="clinician"),
        subject=Subject(type="Patient", id="p-1"),
        details={"z": 1, "a": {"y": "é", "b": [3, 2, 1]}},
        request_id="req-1",
        duration_ms=12,
    )


class TestSerialize:
    """Test the canonical byte form of records."""

    def test_deterministic(self, record):
        """Test repeated calls give identical bytes."""
        assert serialize(record) == serialize(record)
        assert serialize(record) == serialize(record.model_copy(deep=True))

    def test_field_order_and_sorted_nested_keys(self, record):
        """Test top-level order is fixed and nested keys are sorted."""
        data = serialize(record)

        parsed = json.loads(data)
        assert list(parsed) == list(RECORD_FIELDS)
        assert data.count(b'"details":{"a":{"b":[3,2,1],"y":"\xc3\xa9"},"z":1}') == 1

    def test_timestamp_rendered_in_utc(self, record):
        """Test an offset timestamp serializes the same as its UTC equivalent."""
        shifted = record.model_copy(update={
            "timestamp": record.timestamp.astimezone(timezone(timedelta(hours=-5))),
        })

        assert json.loads(serialize(record))["timestamp"] == "2024-03-01T12:30:45.123456Z"
        assert serialize(shifted) == serialize(record)

    @pytest.mark.skipif(not hasattr(time, "tzset"), reason="requires time.tzset")
    def test_independent_of_process_timezone(self, record, monkeypatch):
        """Test bytes do not change with the TZ environment variable."""
        baseline = serialize(record)
        try:
            for tz in ("UTC", "America/New_York", "Asia/Kolkata"):
                monkeypatch.setenv("TZ", tz)
                time.tzset()
                assert serialize(record) == baseline
        finally:
            monkeypatch.undo()
            time.tzset()

    def test_parsed_line_serializes_like_record(self, record):
        """Test the verifier's view of a persisted line hashes identically."""
        line = to_line(record, "abc")
        entry = parse_line(line)
        entry.pop("hash")

        assert serialize(entry) == serialize(record)

    def test_hash_excluded(self, record):
        """Test a stored hash field never feeds back into the bytes."""
        assert serialize(record.model_copy(update={"hash": "f" * 64})) == serialize(record)


class TestHashing:
    """Test chain hashing."""

    def test_sha256_of_bytes_then_previous(self, record):
        """Test the hash covers the canonical bytes followed by the previous hash."""
        expected = hashlib.sha256(serialize(record) + b"prev").hexdigest()

        assert compute_hash(record, "prev") == expected

    def test_genesis_is_empty_string(self, record):
        assert GENESIS_HASH == ""
        assert compute_hash(record) == hashlib.sha256(serialize(record)).hexdigest()

    def test_previous_hash_changes_result(self, record):
        assert compute_hash(record, "a") != compute_hash(record, "b")

    def test_line_ends_with_hash(self, record):
        """Test the persisted line is one JSON object with the hash last."""
        line = to_line(record, "deadbeef")

        assert line.endswith('"hash":"deadbeef"}\n')
        assert line.count("\n") == 1
        assert list(json.loads(line))[-1] == "hash"

    @pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"hash": 5}', '{"a": 1}'])
    def test_parse_line_rejects(self, line):
        with pytest.raises(ValueError):
            parse_line(line)
