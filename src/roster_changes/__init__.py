"""Roster change tracking engine.

Detects and scores changes between roster snapshots (users, classes,
organizations, enrollments), records them in a change ledger and plans
incremental re-syncs.
"""

from roster_changes.service import ChangeTrackingService

__version__ = "0.1.0"

__all__ = ["ChangeTrackingService", "__version__"]
