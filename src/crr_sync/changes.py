"""
Change log for sync.

Every column-level mutation of a tracked row is appended to the replica's
change log. Entries are never rewritten; other replicas pull them and feed
them through their merge engine.
"""

import sqlite3
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from .clock import ColumnClock

logger = logging.getLogger(__name__)

# Sentinel column ids. They sort and merge like ordinary columns.
ROW_MARKER = "__row__"
TOMBSTONE = "__tombstone__"

CHANGES_SCHEMA = """
-- Change log: append-only, one row per column mutation
CREATE TABLE IF NOT EXISTS crr_changes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    tbl TEXT NOT NULL,
    pk TEXT NOT NULL,
    cid TEXT NOT NULL,
    val,
    col_version INTEGER NOT NULL,
    db_version INTEGER NOT NULL,
    site_id TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_crr_changes_version ON crr_changes(db_version, seq);
"""


class ChangeType(Enum):
    """Kind of mutation a change records, derived from its column id."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def normalize_key(key: Any) -> Tuple:
    """Turn a scalar or composite primary key into a tuple."""
    if isinstance(key, (tuple, list)):
        return tuple(key)
    return (key,)


def encode_key(key: Any) -> str:
    """Encode a primary key for the metadata and log tables."""
    return json.dumps(list(normalize_key(key)))


def decode_key(encoded: str) -> Tuple:
    """Decode a primary key written by encode_key()."""
    return tuple(json.loads(encoded))


@dataclass(frozen=True)
class Change:
    """
    A single change to one column of one row.

    This tuple is the only shape exchanged between replicas.
    """
    table_name: str
    primary_key: Tuple
    column_id: str
    value: Any
    column_version: int
    db_version: int
    site_id: str

    @property
    def change_type(self) -> ChangeType:
        """Insert marker, tombstone, or a plain column write."""
        if self.column_id == ROW_MARKER:
            return ChangeType.INSERT
        if self.column_id == TOMBSTONE:
            return ChangeType.DELETE
        return ChangeType.UPDATE

    @property
    def clock(self) -> ColumnClock:
        return ColumnClock(self.column_version, self.site_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "table_name": self.table_name,
            "primary_key": list(self.primary_key),
            "column_id": self.column_id,
            "value": self.value,
            "column_version": self.column_version,
            "db_version": self.db_version,
            "site_id": self.site_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Change":
        """Create from dictionary."""
        return cls(
            table_name=d["table_name"],
            primary_key=normalize_key(d["primary_key"]),
            column_id=d["column_id"],
            value=d.get("value"),
            column_version=d["column_version"],
            db_version=d["db_version"],
            site_id=d["site_id"],
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Change":
        """Create from a crr_changes row."""
        return cls(
            table_name=row["tbl"],
            primary_key=decode_key(row["pk"]),
            column_id=row["cid"],
            value=row["val"],
            column_version=row["col_version"],
            db_version=row["db_version"],
            site_id=row["site_id"],
        )


class ChangeLog:
    """
    Append-only log of a replica's changes.

    Writes join the caller's open transaction; the caller commits.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def append(self, change: Change) -> None:
        """
        Append a change.

        Args:
            change: The change, already stamped with this replica's db_version
        """
        self._conn.execute(
            """
            INSERT INTO crr_changes
            (tbl, pk, cid, val, col_version, db_version, site_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change.table_name,
                encode_key(change.primary_key),
                change.column_id,
                change.value,
                change.column_version,
                change.db_version,
                change.site_id,
            ),
        )
        logger.debug(
            f"Logged {change.change_type.value} {change.table_name}"
            f"{list(change.primary_key)}.{change.column_id} "
            f"v{change.column_version} at db_version {change.db_version}"
        )

    def fetch_after(
        self,
        db_version: int = 0,
        seq: Optional[int] = None,
        limit: int = 100,
    ) -> List[Tuple[int, Change]]:
        """
        Fetch one batch of changes, ordered by (db_version, seq).

        Args:
            db_version: Fetch changes after this version
            seq: When set, also fetch changes at `db_version` with a later seq
            limit: Maximum changes to return

        Returns:
            List of (seq, change) pairs; the last seq resumes the next batch
        """
        if seq is None:
            rows = self._conn.execute(
                """
                SELECT * FROM crr_changes
                WHERE db_version > ?
                ORDER BY db_version ASC, seq ASC
                LIMIT ?
                """,
                (db_version, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM crr_changes
                WHERE db_version > ? OR (db_version = ? AND seq > ?)
                ORDER BY db_version ASC, seq ASC
                LIMIT ?
                """,
                (db_version, db_version, seq, limit),
            ).fetchall()
        return [(row["seq"], Change.from_row(row)) for row in rows]

    def count(self) -> int:
        """Number of entries in the log."""
        row = self._conn.execute("SELECT COUNT(*) FROM crr_changes").fetchone()
        return row[0]
