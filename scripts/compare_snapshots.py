#!/usr/bin/env python3
"""
Compare two roster snapshots and print the batch delta.

Each snapshot file is a JSON array of entity objects of one type, as
exported by a full sync. Entities are matched by id, then external id.

Usage:
    python scripts/compare_snapshots.py ENTITY_TYPE PREVIOUS.json CURRENT.json
        [--config CONFIG_PATH] [--include-unchanged] [--output OUTPUT.json]
"""

import argparse
import json
import sys
from pathlib import Path

import structlog

from roster_changes.service import ChangeTrackingService
from roster_changes.utils.config_loader import ConfigLoader, ConfigurationError
from roster_changes.utils.logging_config import configure_logging_from_config

log = structlog.stdlib.get_logger()


def load_snapshot(path: str) -> list[dict]:
    """
    Load one snapshot file.

    Raises:
        ValueError: If the file is not a JSON array of objects
    """
    with open(path, "r") as f:
        data = json.load(f)

    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"{path} must contain a JSON array of objects")

    log.debug("snapshot_loaded", path=path, entities=len(data))
    return data


def main():
    """Main entry point for the snapshot comparison script."""
    parser = argparse.ArgumentParser(description="Compare two roster snapshots")
    parser.add_argument("entity_type", type=str, help="Roster entity type (user, class, ...)")
    parser.add_argument("previous", type=str, help="Previous snapshot JSON file")
    parser.add_argument("current", type=str, help="Current snapshot JSON file")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--include-unchanged",
        action="store_true",
        help="Report unchanged fields too",
    )
    parser.add_argument(
        "--output",
        type=str,
        help="Write the full delta as JSON to this file",
        default=None,
    )

    args = parser.parse_args()

    try:
        config = ConfigLoader().load_config(args.config)
        previous = load_snapshot(args.previous)
        current = load_snapshot(args.current)
    except (ConfigurationError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging_from_config(config.logging)

    service = ChangeTrackingService.from_config(config)
    envelope = service.calculate_batch_delta(
        args.entity_type,
        previous,
        current,
        {"include_unchanged": args.include_unchanged},
    )

    if not envelope["success"]:
        for error in envelope["errors"]:
            print(f"Error: {error}", file=sys.stderr)
        sys.exit(1)

    delta = envelope["batch_delta"]
    if args.output:
        Path(args.output).write_text(json.dumps(delta, indent=2))

    summary = delta["summary"]
    print("\n" + "=" * 60)
    print(f"SNAPSHOT DELTA: {args.entity_type}")
    print("=" * 60)
    print(f"Entities compared: {delta['total_entities']}")
    print(f"Changed: {delta['changed_entities']}")
    print(f"Unchanged: {delta['unchanged_entities']}")
    print(f"Skipped (no id): {delta['metadata']['skipped_entities']}")
    for change_type, count in summary["change_distribution"].items():
        print(f"  {change_type}: {count}")
    print(f"Field changes: {summary['total_changes']}")
    print(f"Significant entities: {summary['significant_changes']}")
    print(f"Average change score: {summary['average_change_score']:.1f}")
    print("=" * 60)


if __name__ == "__main__":
    main()
