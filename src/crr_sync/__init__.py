"""
crr-sync: conflict-free replicated tables on SQLite.

Replicas accept local writes independently and converge by exchanging
column-level change logs.
"""

from .errors import (
    SyncError,
    DuplicateKey,
    NotFound,
    ReplicaUnavailable,
    ReconciliationMismatch,
    UnknownTable,
    UnknownColumn,
)
from .clock import ColumnClock, VersionVector
from .changes import Change, ChangeLog, ChangeType, ROW_MARKER, TOMBSTONE
from .store import TableSchema, VersionedTable
from .replica import Replica
from .merge import MergeEngine, MergeOutcome, MergeResult
from .sync import SyncDriver, SyncResult, export_changes, sync_one_way, sync_bidirectional, sync_all
from .reconcile import assert_converged, sync_and_reconcile
from .config import Config, LoggingConfig, ReplicaConfig, SyncConfig, load_config, setup_logging

__version__ = "0.1.0"
__all__ = [
    "SyncError",
    "DuplicateKey",
    "NotFound",
    "ReplicaUnavailable",
    "ReconciliationMismatch",
    "UnknownTable",
    "UnknownColumn",
    "ColumnClock",
    "VersionVector",
    "Change",
    "ChangeLog",
    "ChangeType",
    "ROW_MARKER",
    "TOMBSTONE",
    "TableSchema",
    "VersionedTable",
    "Replica",
    "MergeEngine",
    "MergeOutcome",
    "MergeResult",
    "SyncDriver",
    "SyncResult",
    "export_changes",
    "sync_one_way",
    "sync_bidirectional",
    "sync_all",
    "assert_converged",
    "sync_and_reconcile",
    "Config",
    "LoggingConfig",
    "ReplicaConfig",
    "SyncConfig",
    "load_config",
    "setup_logging",
]
