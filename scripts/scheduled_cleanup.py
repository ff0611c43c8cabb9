#!/usr/bin/env python3
"""
Scheduled ledger maintenance script for the roster change tracking engine.

This script runs the change history lifecycle jobs:
- Retention: deletes records older than history.retention_period_days
- Compression: folds aged records into per-entity summaries
- Optimization: refreshes ledger index statistics

Designed to be run on a schedule (e.g., via cron or Airflow) every
history.cleanup_interval_hours against a persistent ledger database.

Usage:
    python scripts/scheduled_cleanup.py [--config CONFIG_PATH] [--only TYPE ...]
"""

import argparse
import sys
from datetime import datetime, timezone

import structlog

from roster_changes.errors import ChangeTrackingError
from roster_changes.history.ledger import ChangeHistoryLedger
from roster_changes.providers import get_change_store
from roster_changes.utils.config_loader import ConfigLoader
from roster_changes.utils.logging_config import configure_logging_from_config

log = structlog.stdlib.get_logger()

CLEANUP_TYPES = ["retention", "compression", "optimization"]


def perform_cleanup(config_path: str | None = None, cleanup_types: list[str] | None = None) -> dict:
    """
    Run the requested lifecycle jobs against the configured ledger.

    Args:
        config_path: Optional path to configuration file
        cleanup_types: Jobs to run, in order (defaults to all three)

    Returns:
        Dictionary with per-job statistics
    """
    start_time = datetime.now(timezone.utc)
    cleanup_types = cleanup_types or CLEANUP_TYPES

    try:
        config_loader = ConfigLoader()
        config = config_loader.load_config(config_path)
        configure_logging_from_config(config.logging)
        config_loader.validate_config(config)

        log.info(
            "scheduled_cleanup_started",
            cleanup_types=cleanup_types,
            timestamp=start_time.isoformat(),
        )

        ledger = ChangeHistoryLedger(get_change_store(config.history), config.history)
        try:
            results = [
                ledger.trigger_cleanup(cleanup_type, now=start_time)
                for cleanup_type in cleanup_types
            ]
        finally:
            ledger.close()

    except ChangeTrackingError as e:
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        log.error("scheduled_cleanup_failed", error=str(e), duration_seconds=duration)
        return {
            "success": False,
            "error": str(e),
            "start_time": start_time.isoformat(),
            "duration_seconds": duration,
        }

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    stats = {
        "success": all(r.success for r in results),
        "jobs": [r.model_dump(mode="json") for r in results],
        "start_time": start_time.isoformat(),
        "duration_seconds": duration,
    }

    log.info(
        "scheduled_cleanup_completed",
        success=stats["success"],
        records_deleted=sum(r.records_deleted for r in results),
        records_compressed=sum(r.records_compressed for r in results),
        duration_seconds=duration,
    )
    return stats


def main():
    """Main entry point for scheduled cleanup script."""
    parser = argparse.ArgumentParser(
        description="Scheduled change ledger maintenance for roster change tracking"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--only",
        choices=CLEANUP_TYPES,
        nargs="+",
        help="Run only the given jobs",
        default=None,
    )

    args = parser.parse_args()

    stats = perform_cleanup(config_path=args.config, cleanup_types=args.only)

    print("\n" + "=" * 60)
    print("LEDGER CLEANUP SUMMARY")
    print("=" * 60)

    if "jobs" in stats:
        for job in stats["jobs"]:
            status = "OK" if not job["errors"] else "ERRORS"
            print(f"{job['cleanup_type']:<14} {status}")
            print(f"  Processed: {job['records_processed']}")
            print(f"  Deleted: {job['records_deleted']}")
            print(f"  Compressed: {job['records_compressed']}")
            print(f"  Reclaimed: ~{job['storage_reclaimed']} bytes")
            for error in job["errors"]:
                print(f"  - {error}")
    else:
        print("Status: FAILED")
        print(f"Error: {stats.get('error', 'Unknown error')}")

    print(f"Duration: {stats.get('duration_seconds', 0):.2f} seconds")
    print("=" * 60)

    sys.exit(0 if stats.get("success") else 1)


if __name__ == "__main__":
    main()
