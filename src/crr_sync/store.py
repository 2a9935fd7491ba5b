"""
Versioned table store.

Each replicated table is an ordinary SQLite table holding the visible
rows. The version of every (row, column) cell is kept beside it in
crr_clock, and every write is appended to the change log.

A key's tombstone hides every cell whose clock is not greater than it.
The row is live while at least one non-tombstone cell is visible.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from .changes import ROW_MARKER, TOMBSTONE, Change, encode_key, normalize_key
from .clock import ColumnClock
from .errors import DuplicateKey, NotFound, UnknownColumn

logger = logging.getLogger(__name__)


def _quote(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name + '"'


@dataclass
class TableSchema:
    """
    Shape of a replicated table.

    Args:
        name: Table name
        primary_key: Primary key column(s)
        columns: Value columns, in row order
        types: Optional SQLite type per column name
        index: Optional value column with a secondary index
    """
    name: str
    primary_key: Sequence[str]
    columns: Sequence[str]
    types: Dict[str, str] = field(default_factory=dict)
    index: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.primary_key, str):
            self.primary_key = (self.primary_key,)
        self.primary_key = tuple(self.primary_key)
        self.columns = tuple(self.columns)

        if not self.primary_key:
            raise ValueError(f"{self.name}: a primary key is required")
        names = [self.name, *self.primary_key, *self.columns]
        for name in names:
            if not name or '"' in name:
                raise ValueError(f"Invalid identifier {name!r}")
        for name in (*self.primary_key, *self.columns):
            if name in (ROW_MARKER, TOMBSTONE):
                raise ValueError(f"{self.name}: {name!r} is reserved")
        if len(set(names[1:])) != len(names) - 1:
            raise ValueError(f"{self.name}: duplicate column names")
        if self.index is not None and self.index not in self.columns:
            raise ValueError(f"{self.name}: index column {self.index!r} is not a value column")

    @property
    def all_columns(self) -> Tuple[str, ...]:
        """Primary key columns followed by value columns."""
        return self.primary_key + self.columns

    def affinity(self, column: str) -> str:
        """SQLite type affinity of a column: integer, text, real, numeric or blob."""
        declared = self.types.get(column, "").upper()
        if not declared or "BLOB" in declared:
            return "blob"
        if "INT" in declared:
            return "integer"
        if any(t in declared for t in ("CHAR", "CLOB", "TEXT")):
            return "text"
        if any(t in declared for t in ("REAL", "FLOA", "DOUB")):
            return "real"
        return "numeric"

    def coerce_key(self, key: Any) -> Tuple:
        """
        Normalize a primary key to one canonical Python value per column.

        Values SQLite stores as the same key (1, 1.0) must encode the same
        way in the metadata tables, so they are converted to the column's
        affinity. Values that would change meaning on conversion are refused.

        Raises:
            ValueError: If the key has the wrong arity or a value does not fit its column
        """
        key = normalize_key(key)
        if len(key) != len(self.primary_key):
            raise ValueError(
                f"{self.name}: key {key!r} does not match primary key {self.primary_key}"
            )
        return tuple(self._coerce_key_part(c, v) for c, v in zip(self.primary_key, key))

    def _coerce_key_part(self, column: str, value: Any) -> Any:
        affinity = self.affinity(column)
        if value is None or isinstance(value, (bool, bytes)):
            raise ValueError(f"{self.name}.{column}: unsupported key value {value!r}")

        if affinity == "text":
            if not isinstance(value, str):
                raise ValueError(f"{self.name}.{column}: expected text key, got {value!r}")
            return value
        if affinity == "real":
            if not isinstance(value, (int, float)):
                raise ValueError(f"{self.name}.{column}: expected numeric key, got {value!r}")
            return float(value)
        if affinity != "blob" and isinstance(value, str):
            raise ValueError(f"{self.name}.{column}: expected numeric key, got {value!r}")
        if isinstance(value, float):
            if not value.is_integer():
                if affinity == "integer":
                    raise ValueError(f"{self.name}.{column}: expected integer key, got {value!r}")
                return value
            return int(value)
        if affinity == "integer" and not isinstance(value, int):
            raise ValueError(f"{self.name}.{column}: expected integer key, got {value!r}")
        return value

    def create_statements(self) -> List[str]:
        """DDL for the visible table and its secondary index."""
        column_defs = ", ".join(
            f"{_quote(c)} {self.types.get(c, '')}".rstrip() for c in self.all_columns
        )
        pk = ", ".join(_quote(c) for c in self.primary_key)
        statements = [
            f"CREATE TABLE IF NOT EXISTS {_quote(self.name)} ({column_defs}, PRIMARY KEY ({pk}))"
        ]
        if self.index:
            statements.append(
                f"CREATE INDEX IF NOT EXISTS {_quote(self.name + '_' + self.index)} "
                f"ON {_quote(self.name)} ({_quote(self.index)})"
            )
        return statements


class Cell(NamedTuple):
    """Current value and clock of one (row, column) cell."""
    value: Any
    clock: ColumnClock


class VersionedTable:
    """
    A replicated table bound to a replica.

    create/update/delete/get/read_all are the local API. cells, record,
    purge and materialize are the primitives the merge engine uses; they
    must run inside the replica's transaction().
    """

    def __init__(self, replica, schema: TableSchema):
        self.replica = replica
        self.schema = schema
        self.name = schema.name

    def check_key(self, key: Any) -> Tuple:
        """Validate a key and return its canonical tuple form."""
        return self.schema.coerce_key(key)

    def check_columns(self, names) -> None:
        """Raise UnknownColumn for names outside the schema."""
        unknown = [name for name in names if name not in self.schema.columns]
        if unknown:
            raise UnknownColumn(f"{self.name}: unknown column(s) {unknown}")

    # Primitives

    def cells(self, key: Tuple) -> Dict[str, Cell]:
        """All cells of a key, sentinels included."""
        rows = self.replica.connection.execute(
            "SELECT cid, val, col_version, site_id FROM crr_clock WHERE tbl = ? AND pk = ?",
            (self.name, encode_key(key)),
        ).fetchall()
        return {
            row["cid"]: Cell(row["val"], ColumnClock(row["col_version"], row["site_id"]))
            for row in rows
        }

    @staticmethod
    def is_live(cells: Mapping[str, Cell]) -> bool:
        """True if any non-tombstone cell outranks the tombstone."""
        tombstone = cells.get(TOMBSTONE)
        return any(
            tombstone is None or cell.clock > tombstone.clock
            for cid, cell in cells.items()
            if cid != TOMBSTONE
        )

    def record(self, key: Tuple, column_id: str, value: Any, clock: ColumnClock, db_version: int) -> Change:
        """Set a cell and append the matching change log entry."""
        conn = self.replica.connection
        conn.execute(
            """
            INSERT OR REPLACE INTO crr_clock (tbl, pk, cid, val, col_version, site_id)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (self.name, encode_key(key), column_id, value, clock.version, clock.site_id),
        )
        change = Change(
            table_name=self.name,
            primary_key=key,
            column_id=column_id,
            value=value,
            column_version=clock.version,
            db_version=db_version,
            site_id=clock.site_id,
        )
        self.replica.changes.append(change)
        return change

    def purge(self, key: Tuple, tombstone: ColumnClock) -> int:
        """Drop every non-tombstone cell the tombstone dominates."""
        cursor = self.replica.connection.execute(
            """
            DELETE FROM crr_clock
            WHERE tbl = ? AND pk = ? AND cid != ?
              AND (col_version < ? OR (col_version = ? AND site_id <= ?))
            """,
            (
                self.name,
                encode_key(key),
                TOMBSTONE,
                tombstone.version,
                tombstone.version,
                tombstone.site_id,
            ),
        )
        return cursor.rowcount

    def materialize(self, key: Tuple) -> bool:
        """
        Rewrite the visible row of a key from its cells.

        Returns:
            True if the row is live afterwards
        """
        conn = self.replica.connection
        cells = self.cells(key)
        tombstone = cells.get(TOMBSTONE)
        visible = {
            cid: cell
            for cid, cell in cells.items()
            if cid != TOMBSTONE and (tombstone is None or cell.clock > tombstone.clock)
        }

        if not visible:
            where = " AND ".join(f"{_quote(c)} = ?" for c in self.schema.primary_key)
            conn.execute(f"DELETE FROM {_quote(self.name)} WHERE {where}", key)
            return False

        values = [visible[c].value if c in visible else None for c in self.schema.columns]
        columns = ", ".join(_quote(c) for c in self.schema.all_columns)
        placeholders = ", ".join("?" for _ in self.schema.all_columns)
        conn.execute(
            f"INSERT OR REPLACE INTO {_quote(self.name)} ({columns}) VALUES ({placeholders})",
            (*key, *values),
        )
        return True

    # Local API

    def create(self, key: Any, columns: Mapping[str, Any]) -> List[Change]:
        """
        Insert a new row.

        A key that was deleted can be created again; the new cells get a
        version one above the tombstone so they win over it everywhere.

        Args:
            key: Primary key value, or tuple for composite keys
            columns: Column values to write

        Returns:
            The change log entries appended

        Raises:
            DuplicateKey: If the key already has a live row
        """
        key = self.check_key(key)
        self.check_columns(columns)

        with self.replica.transaction():
            cells = self.cells(key)
            if self.is_live(cells):
                raise DuplicateKey(self.name, key)

            tombstone = cells.get(TOMBSTONE)
            version = tombstone.clock.version + 1 if tombstone else 1
            clock = ColumnClock(version, self.replica.site_id)
            db_version = self.replica.next_db_version()

            changes = [self.record(key, ROW_MARKER, None, clock, db_version)]
            for column, value in columns.items():
                changes.append(self.record(key, column, value, clock, db_version))
            self.materialize(key)

        logger.debug(f"Created {self.name}{list(key)} at version {version}")
        return changes

    def update(self, key: Any, columns: Mapping[str, Any]) -> List[Change]:
        """
        Update some columns of a live row.

        Only the supplied columns change version; the rest are untouched.

        Raises:
            NotFound: If the key has no live row
        """
        key = self.check_key(key)
        self.check_columns(columns)

        with self.replica.transaction():
            cells = self.cells(key)
            if not self.is_live(cells):
                raise NotFound(self.name, key)

            tombstone = cells.get(TOMBSTONE)
            floor = tombstone.clock.version if tombstone else 0
            db_version = self.replica.next_db_version()

            changes = []
            for column, value in columns.items():
                current = cells.get(column)
                version = max(current.clock.version if current else 0, floor) + 1
                clock = ColumnClock(version, self.replica.site_id)
                changes.append(self.record(key, column, value, clock, db_version))
            self.materialize(key)

        logger.debug(f"Updated {self.name}{list(key)} columns {list(columns)}")
        return changes

    def delete(self, key: Any) -> Change:
        """
        Delete a live row, leaving a tombstone.

        The tombstone version is one above the highest version of any
        cell of the key.

        Raises:
            NotFound: If the key has no live row
        """
        key = self.check_key(key)

        with self.replica.transaction():
            cells = self.cells(key)
            if not self.is_live(cells):
                raise NotFound(self.name, key)

            version = max(cell.clock.version for cell in cells.values()) + 1
            clock = ColumnClock(version, self.replica.site_id)
            db_version = self.replica.next_db_version()

            change = self.record(key, TOMBSTONE, None, clock, db_version)
            self.purge(key, clock)
            self.materialize(key)

        logger.debug(f"Deleted {self.name}{list(key)} with tombstone version {version}")
        return change

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        """Get a live row as a dict, or None."""
        key = self.check_key(key)
        where = " AND ".join(f"{_quote(c)} = ?" for c in self.schema.primary_key)
        columns = ", ".join(_quote(c) for c in self.schema.all_columns)
        with self.replica.lock:
            row = self.replica.connection.execute(
                f"SELECT {columns} FROM {_quote(self.name)} WHERE {where}", key
            ).fetchone()
        return dict(row) if row else None

    def read_all(self) -> List[tuple]:
        """All live rows ordered by primary key ascending."""
        columns = ", ".join(_quote(c) for c in self.schema.all_columns)
        order = ", ".join(f"{_quote(c)} ASC" for c in self.schema.primary_key)
        with self.replica.lock:
            rows = self.replica.connection.execute(
                f"SELECT {columns} FROM {_quote(self.name)} ORDER BY {order}"
            ).fetchall()
        return [tuple(row) for row in rows]
