"""
Errors raised by replicas, merges and sync passes.
"""

from typing import List, Tuple


class SyncError(Exception):
    """Base class for crr-sync errors."""
    pass


class DuplicateKey(SyncError):
    """Create on a key that already has a live row."""

    def __init__(self, table: str, key: Tuple):
        super().__init__(f"{table}: key {key!r} already exists")
        self.table = table
        self.key = key


class NotFound(SyncError):
    """Update or delete on a key with no live row."""

    def __init__(self, table: str, key: Tuple):
        super().__init__(f"{table}: key {key!r} not found")
        self.table = table
        self.key = key


class UnknownTable(SyncError):
    """A change or lookup names a table the replica does not track."""
    pass


class UnknownColumn(SyncError):
    """A write names a column that is not part of the table schema."""
    pass


class ReplicaUnavailable(SyncError):
    """A replica could not be opened, or was already closed."""
    pass


class ReconciliationMismatch(SyncError):
    """
    Replicas hold different rows after sync.

    Carries both sides' rows so the difference can be inspected.
    """

    def __init__(self, left: List[tuple], right: List[tuple]):
        self.left = left
        self.right = right
        lines = ["replicas did not converge", "Left"]
        lines.extend(repr(row) for row in left)
        lines.append("")
        lines.append("Right")
        lines.extend(repr(row) for row in right)
        super().__init__("\n".join(lines))
