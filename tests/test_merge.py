"""
Tests for the causal merge engine.
"""

import itertools

import pytest

from crr_sync.changes import ROW_MARKER, TOMBSTONE, Change
from crr_sync.clock import ColumnClock
from crr_sync.errors import UnknownColumn, UnknownTable
from crr_sync.merge import MergeEngine, MergeOutcome, MergeResult
from crr_sync.replica import Replica
from crr_sync.store import TableSchema


POSTS = TableSchema("Posts", "Id", ["ParentId", "Body", "Title"])


def change(column_id, value, version, site_id, key=1, db_version=1, table="Posts"):
    return Change(
        table_name=table,
        primary_key=(key,),
        column_id=column_id,
        value=value,
        column_version=version,
        db_version=db_version,
        site_id=site_id,
    )


@pytest.fixture
def replica():
    """Replica changes are merged into (site-b)."""
    r = Replica(":memory:", [POSTS], site_id="site-b").open()
    yield r
    r.close()


@pytest.fixture
def engine(replica):
    return MergeEngine(replica)


@pytest.fixture
def posts(replica):
    return replica.table("Posts")


class TestMergeResult:
    """Tests for MergeResult."""

    def test_counts(self):
        """Outcomes are tallied."""
        result = MergeResult()
        result.add(MergeOutcome.ADOPTED)
        result.add(MergeOutcome.DISCARDED)
        result.add(MergeOutcome.DISCARDED)
        assert (result.adopted, result.discarded, result.total) == (1, 2, 3)


class TestApplyToEmpty:
    """Changes for cells the replica has never seen."""

    def test_absorbs_new_row(self, engine, posts):
        """Marker and columns build the row."""
        assert engine.apply(change(ROW_MARKER, None, 1, "site-a")) is MergeOutcome.ADOPTED
        assert engine.apply(change("Body", "One", 1, "site-a")) is MergeOutcome.ADOPTED
        assert posts.read_all() == [(1, None, "One", None)]

    def test_column_alone_makes_row_live(self, engine, posts):
        """A visible column is enough for the row to exist."""
        engine.apply(change("Title", "T", 1, "site-a"))
        assert posts.read_all() == [(1, None, None, "T")]

    def test_adoption_logged_locally(self, engine, replica):
        """Adopted changes are re-logged with a local db_version and original site."""
        engine.apply(change("Body", "One", 3, "site-a", db_version=40))

        [(_, logged)] = replica.changes.fetch_after(0)
        assert logged.db_version == 1
        assert logged.site_id == "site-a"
        assert logged.column_version == 3
        assert replica.db_version == 1

    def test_equal_numeric_key_is_same_row(self, engine, posts, replica):
        """A remote 1.0 key lands on row 1 and is logged as 1."""
        engine.apply(change("Body", "One", 1, "site-a"))
        assert engine.apply(change("Body", "Two", 2, "site-a", key=1.0)) is MergeOutcome.ADOPTED
        assert posts.read_all() == [(1, None, "Two", None)]
        assert {c.primary_key for _, c in replica.changes.fetch_after(0)} == {(1,)}

    def test_unknown_table(self, engine):
        """Changes for untracked tables are rejected."""
        with pytest.raises(UnknownTable):
            engine.apply(change("Body", "x", 1, "site-a", table="Comments"))

    def test_unknown_column(self, engine, replica):
        """Changes for unknown columns are rejected without writing."""
        with pytest.raises(UnknownColumn):
            engine.apply(change("Nope", "x", 1, "site-a"))
        assert replica.db_version == 0


class TestColumnOrdering:
    """Last writer wins by (version, site id)."""

    def test_higher_version_wins(self, engine, posts):
        """A higher incoming version overwrites the local value."""
        posts.create(1, {"Body": "Local"})
        assert engine.apply(change("Body", "Remote", 2, "site-a")) is MergeOutcome.ADOPTED
        assert posts.get(1)["Body"] == "Remote"
        assert posts.cells((1,))["Body"].clock == ColumnClock(2, "site-a")

    def test_lower_version_discarded(self, engine, posts, replica):
        """A lower incoming version is a no-op."""
        posts.create(1, {"Body": "Local"})
        posts.update(1, {"Body": "Local2"})
        log_size = replica.changes.count()

        assert engine.apply(change("Body", "Remote", 1, "site-z")) is MergeOutcome.DISCARDED
        assert posts.get(1)["Body"] == "Local2"
        assert replica.changes.count() == log_size

    def test_equal_version_higher_site_wins(self, engine, posts):
        """Ties go to the greater site id."""
        posts.create(1, {"Body": "Local"})
        assert engine.apply(change("Body", "Remote", 1, "site-c")) is MergeOutcome.ADOPTED
        assert posts.get(1)["Body"] == "Remote"

    def test_equal_version_lower_site_loses(self, engine, posts):
        """Ties against a greater local site id are discarded."""
        posts.create(1, {"Body": "Local"})
        assert engine.apply(change("Body", "Remote", 1, "site-a")) is MergeOutcome.DISCARDED
        assert posts.get(1)["Body"] == "Local"

    def test_other_columns_untouched(self, engine, posts):
        """Merging one column leaves the others alone."""
        posts.create(1, {"Body": "Body", "Title": "Title"})
        engine.apply(change("Title", "New", 5, "site-a"))
        assert posts.read_all() == [(1, None, "Body", "New")]


class TestIdempotence:
    """Re-applying a change changes nothing."""

    def test_reapply_is_noop(self, engine, posts, replica):
        """The second application is discarded."""
        c = change("Body", "One", 1, "site-a")
        assert engine.apply(c) is MergeOutcome.ADOPTED
        rows, version = posts.read_all(), replica.db_version

        assert engine.apply(c) is MergeOutcome.DISCARDED
        assert posts.read_all() == rows
        assert replica.db_version == version


class TestTombstones:
    """Tombstones take part in the same ordering."""

    def test_newer_tombstone_deletes(self, engine, posts):
        """A tombstone above every cell deletes the row."""
        posts.create(1, {"Body": "One"})
        assert engine.apply(change(TOMBSTONE, None, 2, "site-a")) is MergeOutcome.ADOPTED
        assert posts.read_all() == []
        assert set(posts.cells((1,))) == {TOMBSTONE}

    def test_stale_tombstone_keeps_newer_cells(self, engine, posts):
        """A tombstone below a live cell leaves that cell visible."""
        posts.create(1, {"Body": "One"})
        posts.update(1, {"Body": "Two"})
        posts.update(1, {"Body": "Three"})

        engine.apply(change(TOMBSTONE, None, 2, "site-a"))

        # Marker (v1) is hidden, Body (v3) survives and keeps the row live.
        assert posts.read_all() == [(1, None, "Three", None)]

    def test_dominated_cell_after_tombstone_discarded(self, engine, posts):
        """Cells at or below the tombstone never come back."""
        engine.apply(change(TOMBSTONE, None, 2, "site-a"))
        assert engine.apply(change("Body", "Old", 1, "site-z")) is MergeOutcome.DISCARDED
        assert engine.apply(change("Body", "Old", 2, "site-a")) is MergeOutcome.DISCARDED
        assert posts.read_all() == []

    def test_recreate_resurrects(self, engine, posts):
        """A create above the tombstone brings the key back."""
        posts.create(1, {"Body": "One"})
        engine.apply(change(TOMBSTONE, None, 2, "site-a"))
        engine.apply(change(ROW_MARKER, None, 3, "site-a"))
        engine.apply(change("Body", "New", 3, "site-a"))
        assert posts.read_all() == [(1, None, "New", None)]

    def test_local_create_after_remote_tombstone(self, engine, posts):
        """Local create on a remotely deleted key outranks the tombstone."""
        engine.apply(change(TOMBSTONE, None, 5, "site-a"))
        changes = posts.create(1, {"Body": "Mine"})
        assert {c.column_version for c in changes} == {6}
        assert posts.read_all() == [(1, None, "Mine", None)]


class TestCommutativity:
    """Order of arrival does not matter."""

    CHANGES = [
        change(ROW_MARKER, None, 1, "site-a"),
        change("Body", "A1", 1, "site-a"),
        change("Body", "C1", 1, "site-c"),
        change("Body", "A2", 2, "site-a"),
        change(TOMBSTONE, None, 3, "site-c"),
        change(ROW_MARKER, None, 4, "site-a"),
        change("Title", "T4", 4, "site-a"),
        change("Title", "T2", 2, "site-c"),
    ]

    def test_all_permutations_converge(self):
        """Every arrival order yields the same rows and cells."""
        outcomes = set()
        for order in itertools.islice(itertools.permutations(self.CHANGES), 0, None, 503):
            with Replica(":memory:", [POSTS], site_id="site-x") as replica:
                MergeEngine(replica).apply_all(order)
                posts = replica.table("Posts")
                cells = tuple(sorted((cid, c.value, c.clock) for cid, c in posts.cells((1,)).items()))
                outcomes.add((tuple(posts.read_all()), cells))

        assert len(outcomes) == 1
        [(rows, _)] = outcomes
        assert rows == ((1, None, None, "T4"),)
