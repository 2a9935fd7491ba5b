"""
Causal merge of foreign changes.

A change is adopted when its (column_version, site_id) clock is greater
than the local clock of the same cell; otherwise it is dropped. Row
markers and tombstones use the same ordering, and a tombstone also hides
any cell it dominates. Merging is therefore commutative and idempotent:
replicas that have seen the same changes, in any order, hold the same rows.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .changes import TOMBSTONE, Change, ChangeType
from .replica import Replica

logger = logging.getLogger(__name__)


class MergeOutcome(Enum):
    """What applying one change did."""
    ADOPTED = "adopted"
    DISCARDED = "discarded"


@dataclass
class MergeResult:
    """Counts from applying a batch of changes."""
    adopted: int = 0
    discarded: int = 0

    @property
    def total(self) -> int:
        return self.adopted + self.discarded

    def add(self, outcome: MergeOutcome) -> None:
        if outcome is MergeOutcome.ADOPTED:
            self.adopted += 1
        else:
            self.discarded += 1


class MergeEngine:
    """
    Applies foreign changes to a replica.

    Each change is applied in its own transaction: the cell value, its
    clock and the local change log entry are written together or not at all.
    """

    def __init__(self, replica: Replica):
        """
        Args:
            replica: The replica changes are merged into
        """
        self.replica = replica

    def apply(self, change: Change) -> MergeOutcome:
        """
        Apply one change.

        Args:
            change: Change exported by another replica

        Returns:
            ADOPTED if the change won and was written, DISCARDED if the
            local state already dominates it

        Raises:
            UnknownTable: If the replica does not track the change's table
            UnknownColumn: If the column is not part of the table
        """
        table = self.replica.table(change.table_name)
        key = table.check_key(change.primary_key)
        if change.change_type is ChangeType.UPDATE:
            table.check_columns([change.column_id])

        incoming = change.clock
        with self.replica.transaction():
            cells = table.cells(key)

            local = cells.get(change.column_id)
            if local is not None and incoming <= local.clock:
                return MergeOutcome.DISCARDED

            tombstone = cells.get(TOMBSTONE)
            if (
                change.column_id != TOMBSTONE
                and tombstone is not None
                and incoming <= tombstone.clock
            ):
                return MergeOutcome.DISCARDED

            db_version = self.replica.next_db_version()
            table.record(key, change.column_id, change.value, incoming, db_version)
            if change.column_id == TOMBSTONE:
                table.purge(key, incoming)
            table.materialize(key)

        logger.debug(
            f"Adopted {change.change_type.value} {change.table_name}{list(key)}."
            f"{change.column_id} v{incoming.version} from {incoming.site_id}"
        )
        return MergeOutcome.ADOPTED

    def apply_all(self, changes: Iterable[Change]) -> MergeResult:
        """
        Apply changes in order.

        Args:
            changes: Changes exported by another replica

        Returns:
            MergeResult with adopted/discarded counts
        """
        result = MergeResult()
        for change in changes:
            result.add(self.apply(change))
        return result
