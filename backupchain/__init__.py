"""
Backupchain - periodic backups with full/incremental lineage.

This package keeps a lineage of full and incremental backups over a
whole-file content-addressable store, rebuilds any backup by replaying its
chain, and expires old backups without breaking the chains that remain.
"""

__version__ = "0.1.0"

# Export public API
from .operations import BackupOperations
from .database import BackupDatabase
from .lineage import LineageStore
from .dedup import DedupStore
from .detector import ChangeSetDetector
from .planner import RestorePlanner
from .gc import RetentionGC

__all__ = [
    "BackupOperations",
    "BackupDatabase",
    "LineageStore",
    "DedupStore",
    "ChangeSetDetector",
    "RestorePlanner",
    "RetentionGC",
]
