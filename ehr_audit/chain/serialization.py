"""
Canonical serialization and chain hashing.

The same logical record must always produce the same bytes, otherwise the
verifier reports tampering that never happened. Canonical form:

- top-level fields in RECORD_FIELDS order, unknown fields after them sorted
- nested mapping keys sorted
- compact separators, UTF-8, no ASCII escaping
- timestamps already rendered by LogRecord.to_chain_dict() in UTC
"""

import hashlib
import json
from typing import Any, Mapping, Union

from ehr_audit.chain.models import RECORD_FIELDS, LogRecord

# Seed for the first record in a channel
GENESIS_HASH = ""

HASH_FIELD = "hash"


def _canonical_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    ordered = {name: fields[name] for name in RECORD_FIELDS if name in fields}
    for name in sorted(fields):
        if name not in ordered and name != HASH_FIELD:
            ordered[name] = fields[name]
    return ordered


def _dumps(value: Any, sort_keys: bool) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=sort_keys,
    )


def serialize(record: Union[LogRecord, Mapping[str, Any]]) -> bytes:
    """
    Canonical bytes of a record, excluding its hash.

    Accepts a LogRecord or the parsed JSON object of a persisted line, so
    the verifier hashes exactly what the appender hashed.
    """
    fields = record.to_chain_dict() if isinstance(record, LogRecord) else dict(record)
    ordered = _canonical_fields(fields)

    # Top level keeps field order; values underneath sort their keys
    parts = [
        f"{_dumps(name, False)}:{_dumps(value, True)}"
        for name, value in ordered.items()
    ]
    return ("{" + ",".join(parts) + "}").encode("utf-8")


def compute_hash(record: Union[LogRecord, Mapping[str, Any]], previous_hash: str = GENESIS_HASH) -> str:
    """SHA-256 over the canonical record bytes followed by the previous hash."""
    digest = hashlib.sha256()
    digest.update(serialize(record))
    digest.update((previous_hash or GENESIS_HASH).encode("utf-8"))
    return digest.hexdigest()


def to_line(record: Union[LogRecord, Mapping[str, Any]], record_hash: str) -> str:
    """The persisted JSON Lines form: canonical fields, then the hash."""
    body = serialize(record).decode("utf-8")
    return f"{body[:-1]},{_dumps(HASH_FIELD, False)}:{_dumps(record_hash, False)}}}\n"


def parse_line(line: str) -> dict[str, Any]:
    """
    Parse a persisted line.

    Raises:
        ValueError: If the line is not a JSON object carrying a string hash
    """
    entry = json.loads(line)
    if not isinstance(entry, dict) or not isinstance(entry.get(HASH_FIELD), str):
        raise ValueError("record is not a JSON object with a hash")
    return entry
