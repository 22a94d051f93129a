"""Tests for hash-chain appends."""

import json
import threading
from unittest.mock import patch

import pytest

from ehr_audit.chain.appender import Appender
from ehr_audit.chain.exceptions import AppendFailure
from ehr_audit.chain.models import LogRecord
from ehr_audit.chain.serialization import GENESIS_HASH, compute_hash
from ehr_audit.chain.state import TAIL_CHUNK_SIZE, last_complete_line
from ehr_audit.chain.trail import AuditTrail


def read_entries(trail, channel):
    path = trail.state.log_path(channel)
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestAppend:
    """Test appending to a single channel."""

    def test_basic_chain(self, trail):
        """Test three records verify as a chain of three."""
        for operation in ("CREATE", "READ", "UPDATE"):
            assert trail.append("audit", operation=operation).written

        result = trail.verify("audit")

        assert result.valid is True
        assert result.entries_checked == 3

    @pytest.mark.parametrize("count", [1, 2, 25])
    def test_chain_integrity(self, trail, count):
        """Test N appends verify with entries_checked == N."""
        for i in range(count):
            trail.append("audit", operation="READ", details={"i": i})

        result = trail.verify("audit")

        assert result.valid is True
        assert result.entries_checked == count

    def test_records_link_to_previous_hash(self, trail):
        """Test each stored hash chains against the one before it."""
        first = trail.append("audit", operation="CREATE")
        second = trail.append("audit", operation="READ")

        entries = read_entries(trail, "audit")
        body = {k: v for k, v in entries[1].items() if k != "hash"}

        assert entries[0]["hash"] == first.hash
        assert entries[1]["hash"] == second.hash == compute_hash(body, first.hash)
        assert trail.state.read("audit") == second.hash

    def test_details_redacted_before_write(self, trail):
        """Test PHI never reaches disk."""
        trail.append("audit", operation="READ", details={"patient_name": "Jane Doe", "note": "call 555-123-4567"})

        raw = trail.state.log_path("audit").read_text(encoding="utf-8")

        assert "Jane Doe" not in raw
        assert "555-123-4567" not in raw
        assert read_entries(trail, "audit")[0]["details"] == {
            "patient_name": "[REDACTED]",
            "note": "call [PHONE-REDACTED]",
        }

    def test_error_message_redacted(self, trail):
        """Test free-text error messages go through the redactor."""
        trail.append("audit", operation="UPDATE", result={"status": "failure", "error_message": "bad ssn 123-45-6789"})

        assert read_entries(trail, "audit")[0]["result"] == {
            "status": "failure",
            "error_message": "bad ssn [SSN-REDACTED]",
        }

    def test_supplied_hash_ignored(self, trail):
        """Test a caller-supplied hash is replaced."""
        record = LogRecord(channel="audit", operation="READ", hash="0" * 64)

        result = trail.append_record(record)

        assert result.hash != "0" * 64
        assert trail.verify("audit").valid is True

    def test_channels_are_independent(self, trail):
        """Test each channel starts its own chain at genesis."""
        trail.append("audit", operation="READ")
        auth = trail.append("auth", operation="LOGIN_SUCCESS")

        entry = read_entries(trail, "auth")[0]
        body = {k: v for k, v in entry.items() if k != "hash"}

        assert auth.hash == compute_hash(body, GENESIS_HASH)
        assert trail.channels() == ["audit", "auth"]

    @pytest.mark.parametrize("channel", ["", "../etc", "Audit", "a/b", ".hidden"])
    def test_invalid_channel_reported(self, trail, channel):
        """Test a bad channel name is reported in the result, not raised."""
        result = trail.append(channel, operation="READ")

        assert result.written is False
        assert result.error
        assert not trail.log_dir.exists() or not any(trail.log_dir.glob("*.log"))


    def test_lone_surrogates_still_written(self, trail):
        """Test text decoded with surrogateescape does not lose the event."""
        result = trail.append(
            "audit",
            operation="READ",
            details={"note": "bad \udcff byte", "key \ud800": 1},
            user_agent="agent \ud800",
        )

        assert result.written is True
        entry = read_entries(trail, "audit")[0]
        assert entry["details"] == {"note": "bad ? byte", "key ?": 1}
        assert entry["user_agent"] == "agent ?"
        assert trail.verify("audit").valid is True


class TestConcurrency:
    """Test concurrent appends on one channel."""

    def test_threads_share_one_chain(self, trail):
        """Test 50 threads x 20 appends produce one valid chain of 1000."""
        threads_count = 50
        per_thread = 20
        failures = []
        barrier = threading.Barrier(threads_count)

        def worker(n):
            barrier.wait()
            for i in range(per_thread):
                result = trail.append("audit", operation="READ", details={"thread": n, "i": i})
                if not result.written:
                    failures.append(result.error)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = trail.verify("audit")

        assert failures == []
        assert result.valid is True
        assert result.entries_checked == threads_count * per_thread

    def test_separate_trails_share_file_lock(self, log_dir):
        """Test two trails over one directory (as two workers would be) stay chained."""
        first = AuditTrail(log_dir, fsync=False)
        second = AuditTrail(log_dir, fsync=False)

        def worker(trail):
            for i in range(50):
                trail.append("audit", operation="READ", details={"i": i})

        threads = [threading.Thread(target=worker, args=(t,)) for t in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = first.verify("audit")

        assert result.valid is True
        assert result.entries_checked == 100


class TestAppendFailure:
    """Test that write failures are reported, never raised."""

    def test_write_failure_reported(self, trail, caplog):
        """Test a failed durable write returns written=False and leaves state alone."""
        trail.append("audit", operation="CREATE")
        before = trail.state.read("audit")

        with patch.object(Appender, "_write_line", side_effect=AppendFailure("disk full")):
            result = trail.append("audit", operation="READ", details={"patient_name": "Jane Doe"})

        assert result.written is False
        assert "disk full" in result.error
        assert trail.state.read("audit") == before
        assert trail.verify("audit").entries_checked == 1

        # The fallback sink receives the redacted record
        fallback = [r for r in caplog.records if r.name == "ehr_audit.fallback"]
        assert fallback
        assert "Jane Doe" not in fallback[0].getMessage()

    def test_fallback_record_is_ascii_json(self, trail, caplog):
        """Test the fallback sink writes the record as ASCII-escaped JSON."""
        with patch.object(Appender, "_write_line", side_effect=AppendFailure("disk full")):
            trail.append("audit", operation="READ", details={"note": "café"})

        message = [r for r in caplog.records if r.name == "ehr_audit.fallback"][0].getMessage()
        payload = json.loads(message.split("record=", 1)[1])
        assert payload["operation"] == "READ"
        assert payload["details"] == {"note": "café"}
        assert "caf\\u00e9" in message

    def test_fsync_failure_truncates_partial_line(self, log_dir):
        """Test a failed fsync leaves no partial record behind."""
        trail = AuditTrail(log_dir, fsync=True)
        trail.append("audit", operation="CREATE")
        size = trail.state.log_path("audit").stat().st_size

        with patch("ehr_audit.chain.appender.os.fsync", side_effect=OSError("I/O error")):
            result = trail.append("audit", operation="READ")

        assert result.written is False
        assert trail.state.log_path("audit").stat().st_size == size
        assert trail.verify("audit").valid is True

    def test_business_operation_unaffected(self, trail):
        """Test signing an encounter succeeds while its audit append fails."""

        def sign_encounter(encounter):
            encounter["status"] = "signed"
            audit = trail.append("signature", operation="SIGN", subject={"type": "Encounter", "id": encounter["id"]})
            return {"success": True, "audit": audit}

        encounter = {"id": "enc-1", "status": "draft"}
        with patch("builtins.open", side_effect=OSError("read-only file system")):
            outcome = sign_encounter(encounter)

        assert outcome["success"] is True
        assert encounter["status"] == "signed"
        assert outcome["audit"].written is False

    def test_unexpected_error_reported(self, trail):
        """Test even unexpected exceptions become a result."""
        with patch("ehr_audit.chain.appender.compute_hash", side_effect=TypeError("boom")):
            result = trail.append("audit", operation="READ")

        assert result.written is False
        assert "TypeError" in result.error

    def test_invalid_record_reported(self, trail):
        """Test a record that fails validation is reported."""
        result = trail.append("audit", operation="READ", duration_ms="slow")

        assert result.written is False
        assert "validation" in result.error


class TestChainState:
    """Test the last-hash sidecar."""

    def test_sidecar_recovered_from_log(self, trail):
        """Test a missing sidecar is rebuilt from the last record."""
        trail.append("audit", operation="CREATE")
        last = trail.append("audit", operation="READ")
        trail.state.state_path("audit").unlink()

        assert trail.state.read("audit") == last.hash

        trail.append("audit", operation="UPDATE")
        result = trail.verify("audit")
        assert result.valid is True
        assert result.entries_checked == 3

    def test_fresh_channel_reads_genesis(self, trail):
        assert trail.state.read("audit") == GENESIS_HASH

    def test_sidecar_failure_still_written(self, trail):
        """Test a failed sidecar update keeps the record and drops the stale cursor."""
        trail.append("audit", operation="CREATE")

        with patch.object(trail.state, "write", side_effect=OSError("no space")):
            result = trail.append("audit", operation="READ")

        assert result.written is True
        assert "chain state" in result.error
        assert not trail.state.state_path("audit").exists()

        trail.append("audit", operation="UPDATE")
        assert trail.verify("audit").entries_checked == 3

    def test_sidecar_recovered_past_large_record(self, trail):
        """Test recovery finds a last record longer than one read step."""
        trail.append("audit", operation="CREATE", details={"a": 1})
        large = trail.append("audit", operation="UPDATE", details={"blob": "x" * (2 * TAIL_CHUNK_SIZE + 100)})
        trail.state.state_path("audit").unlink()

        assert trail.state.read("audit") == large.hash

        assert trail.append("audit", operation="READ").written is True
        result = trail.verify("audit")
        assert result.valid is True
        assert result.entries_checked == 3

    def test_unreadable_tail_refuses_append(self, trail):
        """Test an unreadable last record blocks the append instead of restarting the chain."""
        trail.append("audit", operation="CREATE")
        trail.state.state_path("audit").unlink()
        path = trail.state.log_path("audit")
        with open(path, "a", encoding="utf-8") as f:
            f.write("not json\n")
        before = path.read_bytes()

        result = trail.append("audit", operation="READ")

        assert result.written is False
        assert "cannot recover chain state" in result.error
        assert path.read_bytes() == before

    def test_unterminated_fragment_refuses_append(self, trail, log_dir):
        log_dir.mkdir(parents=True, exist_ok=True)
        trail.state.log_path("audit").write_text('{"partial', encoding="utf-8")

        result = trail.append("audit", operation="READ")

        assert result.written is False
        assert "no complete record" in result.error


class TestLastCompleteLine:
    """Test the backwards scan for the last record."""

    def test_skips_fragment_and_blank_lines(self, tmp_path):
        path = tmp_path / "audit.log"
        path.write_bytes(b'first\nsecond\n\n{"partial')

        assert last_complete_line(path) == b"second"

    def test_line_spanning_several_steps(self, tmp_path, monkeypatch):
        monkeypatch.setattr("ehr_audit.chain.state.TAIL_CHUNK_SIZE", 4)
        path = tmp_path / "audit.log"
        path.write_bytes(b"alpha\nbravo-charlie\n")

        assert last_complete_line(path) == b"bravo-charlie"

    def test_single_line_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr("ehr_audit.chain.state.TAIL_CHUNK_SIZE", 4)
        path = tmp_path / "audit.log"
        path.write_bytes(b"only-record\n")

        assert last_complete_line(path) == b"only-record"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "audit.log"
        path.write_bytes(b"\n\n")

        assert last_complete_line(path) is None
