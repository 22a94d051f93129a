"""
Channel archival.

Moves a channel's log aside together with a manifest recording where its
chain ended, then resets ChainState so the next record starts a new chain.
"""

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ehr_audit.chain.models import ArchiveResult
from ehr_audit.chain.state import ChainStateStore
from ehr_audit.chain.verifier import Verifier, iter_lines

logger = logging.getLogger(__name__)

ARCHIVE_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class ChainArchiver:
    """
    Archives channel logs.

    Usage:
        archiver = ChainArchiver(state, Path("./logs/archive"))
        result = archiver.archive("audit")
    """

    def __init__(self, state: ChainStateStore, archive_dir: Path, verifier: Optional[Verifier] = None):
        self.state = state
        self.archive_dir = Path(archive_dir)
        self.verifier = verifier or Verifier(state)

    def archive(self, channel: str) -> ArchiveResult:
        """
        Archive a channel's current log.

        The chain is verified first and the outcome is kept in the manifest;
        a broken chain is archived as-is so the evidence is preserved.

        Raises:
            InvalidChannelError: If the channel name is invalid
            OSError: If the manifest could not be written or the log moved
        """
        log_path = self.state.log_path(channel)
        archived_at = datetime.now(timezone.utc)

        with self.state.lock(channel):
            if not log_path.exists() or log_path.stat().st_size == 0:
                logger.info(f"Nothing to archive for channel={channel}")
                return ArchiveResult(channel=channel, archived=False, archived_at=archived_at)

            verification = self.verifier.verify_held(channel)
            anchor = self.state.read_anchor(channel)
            if verification.valid:
                entries = verification.entries_checked
            else:
                logger.warning(
                    f"Archiving broken chain: channel={channel} index={verification.broken_at_index}"
                )
                entries = sum(1 for raw in iter_lines(log_path) if raw.strip())
            final_hash = anchor or verification.last_hash

            self.archive_dir.mkdir(parents=True, exist_ok=True)
            stamp = archived_at.strftime(ARCHIVE_STAMP_FORMAT)
            archive_path = self.archive_dir / f"{channel}_{stamp}.log"
            manifest_path = self.archive_dir / f"{channel}_{stamp}.manifest.json"

            manifest = {
                "channel": channel,
                "entries": entries,
                "final_hash": final_hash,
                "valid": verification.valid,
                "broken_at_index": verification.broken_at_index,
                "archived_at": archived_at.isoformat(),
                "log_file": archive_path.name,
            }
            # The log stays in place until its manifest is on disk
            manifest_path.write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
            try:
                shutil.move(str(log_path), str(archive_path))
            except OSError:
                manifest_path.unlink(missing_ok=True)
                raise
            self.state.reset(channel)

        logger.info(f"Archived channel={channel} entries={entries} to {archive_path}")
        return ArchiveResult(
            channel=channel,
            archived=True,
            entries=entries,
            final_hash=final_hash,
            chain_valid=verification.valid,
            archive_path=str(archive_path),
            manifest_path=str(manifest_path),
            archived_at=archived_at,
        )
