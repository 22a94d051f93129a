"""
Chain state storage.

Each channel keeps its most recent record hash in a sidecar file
(`{log_dir}/.{channel}_hash`) so that appends never scan the log.
The sidecar is the only shared mutable state in the chain; every
read-modify-write of it happens inside `ChainStateStore.lock(channel)`.

Locking is two-level:
- an in-process threading.Lock per channel (threads of one worker)
- an exclusive fcntl.flock on `.{channel}.lock` (separate workers)
"""

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ehr_audit.chain.exceptions import AppendFailure
from ehr_audit.chain.models import validate_channel
from ehr_audit.chain.serialization import GENESIS_HASH, parse_line

logger = logging.getLogger(__name__)

# Bytes read per step when scanning a log backwards for its last record
TAIL_CHUNK_SIZE = 64 * 1024


class ChainStateStore:
    """
    Per-channel file locations, locks and last-hash cursor.

    Usage:
        store = ChainStateStore(Path("./logs"))
        with store.lock("audit"):
            previous = store.read("audit")
            ...
            store.write("audit", new_hash)
    """

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ==================================
    # Paths
    # ==================================

    def log_path(self, channel: str) -> Path:
        return self.log_dir / f"{validate_channel(channel)}.log"

    def state_path(self, channel: str) -> Path:
        return self.log_dir / f".{validate_channel(channel)}_hash"

    def lock_path(self, channel: str) -> Path:
        return self.log_dir / f".{validate_channel(channel)}.lock"

    def channels(self) -> list[str]:
        """Channels that currently have a log file."""
        if not self.log_dir.is_dir():
            return []
        return sorted(path.stem for path in self.log_dir.glob("*.log") if path.is_file())

    # ==================================
    # Locking
    # ==================================

    def _thread_lock(self, channel: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(channel)
            if lock is None:
                lock = threading.Lock()
                self._locks[channel] = lock
            return lock

    @contextmanager
    def lock(self, channel: str) -> Iterator[None]:
        """Hold exclusive access to a channel's chain state."""
        validate_channel(channel)
        with self._thread_lock(channel):
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path(channel), "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    # ==================================
    # Cursor
    # ==================================

    def read(self, channel: str) -> str:
        """
        Get the last hash for a channel.

        Falls back to the last record in the log when the sidecar is
        missing, and to the genesis value for a fresh channel.

        Raises:
            AppendFailure: If the sidecar is missing and the log tail is unreadable
        """
        state_path = self.state_path(channel)
        if state_path.exists():
            return state_path.read_text(encoding="utf-8").strip()

        recovered = self.recover_from_log(channel)
        if recovered is not None:
            logger.warning(f"Chain state missing for channel={channel}, recovered from log tail")
            return recovered
        return GENESIS_HASH

    def read_anchor(self, channel: str) -> Optional[str]:
        """The sidecar value, or None when no sidecar exists."""
        state_path = self.state_path(channel)
        if not state_path.exists():
            return None
        return state_path.read_text(encoding="utf-8").strip()

    def write(self, channel: str, last_hash: str) -> None:
        """Atomically replace the sidecar with a new last hash."""
        state_path = self.state_path(channel)
        tmp_path = state_path.with_name(f"{state_path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(last_hash)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, state_path)

    def reset(self, channel: str) -> None:
        """Forget the cursor so the next record chains against genesis."""
        self.state_path(channel).unlink(missing_ok=True)

    def recover_from_log(self, channel: str) -> Optional[str]:
        """
        Read the hash of the last complete record in the channel log.

        Returns None when the log holds no records.

        Raises:
            AppendFailure: If the log has content but its last record
                cannot be read; chaining against genesis would fork the chain
        """
        log_path = self.log_path(channel)
        if not log_path.exists():
            return None

        line = last_complete_line(log_path)
        if line is None:
            return None
        try:
            return parse_line(line.decode("utf-8"))["hash"]
        except ValueError as e:
            logger.error(f"Last record of channel={channel} is unreadable, cannot recover chain state")
            raise AppendFailure(f"cannot recover chain state for {channel}: {e}") from e


def last_complete_line(path: Path) -> Optional[bytes]:
    """
    Find the last non-blank newline-terminated line of a file.

    Reads backwards in TAIL_CHUNK_SIZE steps, so lines of any length are
    found without loading the whole file.

    Raises:
        AppendFailure: If the file has content but no terminated line
    """
    with open(path, "rb") as f:
        position = f.seek(0, os.SEEK_END)
        buffer = b""
        while position > 0:
            step = min(TAIL_CHUNK_SIZE, position)
            position -= step
            f.seek(position)
            buffer = f.read(step) + buffer

            # Bytes after the final newline are an unterminated fragment
            complete = buffer[:buffer.rfind(b"\n") + 1].rstrip()
            if not complete:
                continue
            start = complete.rfind(b"\n")
            if start != -1 or position == 0:
                return complete[start + 1:]

    if buffer.strip():
        raise AppendFailure(f"{path.name} has no complete record")
    return None
