#!/usr/bin/env python3
"""
Audit Chain Verification Script

Replays the hash chain of every channel in LOG_DIR (and optionally of
archived files) and reports the first broken record per channel.

Usage:
    python scripts/verify_chain.py
    python scripts/verify_chain.py --channel auth
    python scripts/verify_chain.py --archive logs/archive/auth_20260101T000000000000Z.log

Exit code is 1 if any chain is broken.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from ehr_audit.chain.models import VerificationResult
from ehr_audit.chain.trail import build_audit_trail
from ehr_audit.config import get_settings


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def describe(result: VerificationResult) -> str:
    if result.valid:
        return f"{result.entries_checked} entries"
    reason = result.reason.value if result.reason else "unknown"
    return f"broken at record {result.broken_at_index} ({reason}): {result.message}"


def check_manifest(archive_path: Path, result: VerificationResult) -> bool:
    """Compare an archive's replayed final hash with its manifest, if one exists."""
    manifest_path = archive_path.with_name(f"{archive_path.stem}.manifest.json")
    if not manifest_path.exists():
        print_result("manifest", False, f"{manifest_path.name} not found")
        return False

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    matches = (
        manifest.get("final_hash") == result.last_hash
        and manifest.get("entries") == result.entries_checked
    )
    if matches:
        print_result("manifest", True, f"final hash {(result.last_hash or '')[:16]}...")
    else:
        print_result(
            "manifest",
            False,
            f"expected {manifest.get('entries')} entries ending {manifest.get('final_hash')}, "
            f"found {result.entries_checked} ending {result.last_hash}",
        )
    return matches


def main() -> int:
    """Run chain verification."""
    parser = argparse.ArgumentParser(description="Verify hash-chained audit logs")
    parser.add_argument("--channel", action="append", help="Channel to verify (repeatable)")
    parser.add_argument("--archive", action="append", type=Path, help="Archived log file to verify (repeatable)")
    args = parser.parse_args()

    settings = get_settings()
    trail = build_audit_trail(settings)

    print("\n" + "="*60)
    print(" EHR Audit - Chain Verification")
    print("="*60)

    all_valid = True

    print_header(f"Channels in {settings.log_dir_path}")
    channels = args.channel or trail.channels()
    if not channels:
        print("  No channel logs found")
    for channel in channels:
        result = trail.verify(channel)
        print_result(channel, result.valid, describe(result))
        all_valid = all_valid and result.valid

    if args.archive:
        print_header("Archives")
        for path in args.archive:
            result = trail.verifier.verify_file(path)
            print_result(path.name, result.valid, describe(result))
            all_valid = all_valid and result.valid
            if result.valid and not check_manifest(path, result):
                all_valid = False

    # Summary
    print_header("Summary")
    if all_valid:
        print("\n  \033[92mAll chains intact.\033[0m\n")
        return 0

    print("\n  \033[91mBROKEN: at least one chain failed verification.\033[0m")
    print("  Preserve the affected files and investigate before archiving.\n")
    return 1


if __name__ == "__main__":
    sys.exit(main())
