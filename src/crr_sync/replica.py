"""
Replica provisioning.

A replica is one SQLite database holding user tables plus the hidden
sync metadata: its site id, its database version counter, the per-cell
clocks, the change log and the versions pulled from each peer.
"""

import sqlite3
import logging
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .changes import CHANGES_SCHEMA, Change, ChangeLog
from .clock import VersionVector
from .errors import ReplicaUnavailable, UnknownTable
from .store import TableSchema, VersionedTable

logger = logging.getLogger(__name__)

META_SCHEMA = """
-- Site identity and database version counter
CREATE TABLE IF NOT EXISTS crr_site (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    site_id TEXT NOT NULL,
    db_version INTEGER NOT NULL DEFAULT 0
);

-- Per-cell clocks, including row markers and tombstones
CREATE TABLE IF NOT EXISTS crr_clock (
    tbl TEXT NOT NULL,
    pk TEXT NOT NULL,
    cid TEXT NOT NULL,
    val,
    col_version INTEGER NOT NULL,
    site_id TEXT NOT NULL,
    PRIMARY KEY (tbl, pk, cid)
);

-- Highest db_version pulled from each peer
CREATE TABLE IF NOT EXISTS crr_peers (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    vector_json TEXT NOT NULL
);
"""


class Replica:
    """
    One independent copy of the data store.

    Local writes and incoming merges are serialized by `lock`; every
    mutation runs inside a single SQLite transaction.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        tables: Iterable[TableSchema] = (),
        site_id: Optional[str] = None,
        journal_mode: Optional[str] = "wal",
    ):
        """
        Args:
            db_path: SQLite database path, or ":memory:"
            tables: Schemas of the replicated tables
            site_id: Fixed site id; generated on first open when None
            journal_mode: SQLite journal mode, or None to leave the default
        """
        self.db_path = str(db_path) if db_path == ":memory:" else str(Path(db_path).expanduser())
        self.journal_mode = journal_mode
        self.lock = threading.RLock()
        self._requested_site_id = site_id
        self._schemas = list(tables)
        self._conn: Optional[sqlite3.Connection] = None
        self._site_id: Optional[str] = None
        self._tables: Dict[str, VersionedTable] = {}

    @classmethod
    def from_config(cls, config, tables: Iterable[TableSchema] = ()) -> "Replica":
        """Create an unopened replica from a ReplicaConfig."""
        return cls(
            db_path=config.db_path,
            tables=tables,
            site_id=config.site_id,
            journal_mode=config.journal_mode,
        )

    def open(self) -> "Replica":
        """
        Open the database and create metadata and user tables.

        Returns:
            self, so `Replica(...).open()` can be chained

        Raises:
            ReplicaUnavailable: If the database cannot be opened
        """
        if self._conn is not None:
            return self

        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise ReplicaUnavailable(f"Cannot open replica at {self.db_path}: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            if self.journal_mode:
                conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
            conn.executescript(META_SCHEMA + CHANGES_SCHEMA)
            self._site_id = self._load_site_id(conn)
            for schema in self._schemas:
                for statement in schema.create_statements():
                    conn.execute(statement)
            conn.commit()
        except sqlite3.Error as e:
            conn.close()
            raise ReplicaUnavailable(f"Cannot open replica at {self.db_path}: {e}") from e
        except ValueError:
            conn.close()
            raise

        self._conn = conn
        self._tables = {schema.name: VersionedTable(self, schema) for schema in self._schemas}
        logger.info(
            f"Replica {self._site_id} opened at {self.db_path}, "
            f"db_version={self.db_version}, tables={sorted(self._tables)}"
        )
        return self

    def _load_site_id(self, conn: sqlite3.Connection) -> str:
        row = conn.execute("SELECT site_id FROM crr_site WHERE id = 1").fetchone()
        if row:
            if self._requested_site_id and row["site_id"] != self._requested_site_id:
                raise ValueError(
                    f"{self.db_path} already belongs to site {row['site_id']}, "
                    f"not {self._requested_site_id}"
                )
            return row["site_id"]

        site_id = self._requested_site_id or uuid.uuid4().hex
        conn.execute(
            "INSERT INTO crr_site (id, site_id, db_version) VALUES (1, ?, 0)",
            (site_id,),
        )
        conn.execute(
            "INSERT INTO crr_peers (id, vector_json) VALUES (1, ?)",
            (VersionVector().to_json(),),
        )
        return site_id

    def close(self) -> None:
        """Close the database; the replica is unavailable until reopened."""
        with self.lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info(f"Replica {self._site_id} closed")

    def __enter__(self) -> "Replica":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        """True between open() and close()."""
        return self._conn is not None

    def _ensure_open(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ReplicaUnavailable(f"Replica at {self.db_path} is not open")
        return self._conn

    @property
    def site_id(self) -> str:
        self._ensure_open()
        return self._site_id

    @property
    def connection(self) -> sqlite3.Connection:
        """The open SQLite connection; raises ReplicaUnavailable when closed."""
        return self._ensure_open()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Hold the replica lock and run one SQLite transaction.

        Commits on success and rolls back if the body raises.
        """
        with self.lock:
            conn = self._ensure_open()
            with conn:
                yield conn

    @property
    def db_version(self) -> int:
        """Current database version of this replica."""
        with self.lock:
            row = self._ensure_open().execute(
                "SELECT db_version FROM crr_site WHERE id = 1"
            ).fetchone()
            return row["db_version"]

    def next_db_version(self) -> int:
        """Allocate the next database version. Call inside transaction()."""
        conn = self._ensure_open()
        conn.execute("UPDATE crr_site SET db_version = db_version + 1 WHERE id = 1")
        row = conn.execute("SELECT db_version FROM crr_site WHERE id = 1").fetchone()
        return row["db_version"]

    @property
    def changes(self) -> ChangeLog:
        """This replica's change log."""
        return ChangeLog(self._ensure_open())

    def fetch_changes(
        self, db_version: int = 0, seq: Optional[int] = None, limit: int = 100
    ) -> List[Tuple[int, Change]]:
        """Fetch one batch of the change log under the replica lock."""
        with self.lock:
            return self.changes.fetch_after(db_version, seq, limit)

    def peer_versions(self) -> VersionVector:
        """Versions already pulled from each peer."""
        with self.lock:
            row = self._ensure_open().execute(
                "SELECT vector_json FROM crr_peers WHERE id = 1"
            ).fetchone()
            return VersionVector.from_json(row["vector_json"])

    def advance_peer(self, site_id: str, version: int) -> None:
        """
        Record that changes up to `version` were pulled from a peer.

        Args:
            site_id: The peer's site id
            version: The peer's db_version covered by the pull
        """
        with self.transaction() as conn:
            vector = self.peer_versions().advance(site_id, version)
            conn.execute(
                "UPDATE crr_peers SET vector_json = ? WHERE id = 1",
                (vector.to_json(),),
            )

    def table(self, name: str) -> VersionedTable:
        """
        Get a replicated table by name.

        Raises:
            UnknownTable: If the table is not tracked by this replica
        """
        self._ensure_open()
        try:
            return self._tables[name]
        except KeyError:
            raise UnknownTable(f"Replica {self._site_id} does not track table {name!r}") from None

    @property
    def tables(self) -> List[str]:
        """Names of the replicated tables."""
        return [schema.name for schema in self._schemas]

    def read_all(self, table_name: str) -> List[tuple]:
        """Live rows of a table ordered by primary key."""
        return self.table(table_name).read_all()
