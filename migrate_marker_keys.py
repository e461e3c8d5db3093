"""Standardize legacy ``habits_*`` question keys to English marker names.

Usage:
    python migrate_marker_keys.py --dry-run
    python migrate_marker_keys.py
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from likeme.db import AsyncSessionMaker, engine
from likeme.logging_config import setup_logging
from likeme.services.key_migration import KeyMigrationError, standardize_marker_keys

logger = logging.getLogger("migrate_marker_keys")


async def run(dry_run: bool) -> int:
    async with AsyncSessionMaker() as session:
        try:
            report = await standardize_marker_keys(session, dry_run=dry_run)
        except KeyMigrationError as e:
            logger.error(str(e))
            return 1
        finally:
            await engine.dispose()

    verb = "Would update" if dry_run else "Updated"
    for update in report.updated:
        print(f"  {verb}: {update.old_key} -> {update.new_key}")
    for conflict in report.conflicts:
        print(f"  Conflict: {conflict.old_key} -> {conflict.new_key} (target exists, skipped)")
    for key in report.unmapped:
        print(f"  Unmapped: {key}")

    print("-" * 50)
    print(f"Scanned: {report.scanned}")
    print(f"{verb}: {len(report.updated)}")
    print(f"Already standard: {report.already_standard}")
    print(f"Unmapped: {len(report.unmapped)}")
    print(f"Conflicts: {len(report.conflicts)}")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Standardize anamnesis marker keys")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.dry_run)))


if __name__ == "__main__":
    main()
