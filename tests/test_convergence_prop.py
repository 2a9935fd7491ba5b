"""
Property tests: random edits and partial syncs always converge.
"""

import random

from hypothesis import given, settings
from hypothesis.strategies import composite, integers, text

from crr_sync.errors import DuplicateKey, NotFound
from crr_sync.merge import MergeEngine
from crr_sync.reconcile import assert_converged
from crr_sync.replica import Replica
from crr_sync.store import TableSchema
from crr_sync.sync import SyncDriver, export_changes

CREATE = 0
UPDATE = 1
DELETE = 2
SYNC = 3

POSTS = TableSchema("Posts", "Id", ["ParentId", "Body", "Title"])
COLUMNS = ("ParentId", "Body", "Title")


def open_dbs(num_dbs):
    return [Replica(":memory:", [POSTS], site_id=f"site-{i}").open() for i in range(num_dbs)]


@composite
def full_script(draw):
    num_dbs = draw(integers(2, 4))

    def step():
        op = draw(integers(0, 3))
        db = draw(integers(0, num_dbs - 1))
        key = draw(integers(1, 3))
        columns = {
            name: draw(text(alphabet="abxy", max_size=3))
            for name in COLUMNS[1:]
            if draw(integers(0, 1))
        }
        if op == UPDATE and not columns:
            columns = {"Body": draw(text(alphabet="abxy", max_size=3))}
        peer = draw(integers(0, num_dbs - 1))
        return (op, db, key, columns, peer)

    steps = [step() for _ in range(draw(integers(0, 40)))]
    return num_dbs, steps


def run_step(dbs, driver, step):
    op, db, key, columns, peer = step
    posts = dbs[db].table("Posts")
    try:
        if op == CREATE:
            posts.create(key, columns)
        elif op == UPDATE:
            posts.update(key, columns)
        elif op == DELETE:
            posts.delete(key)
        elif peer != db:
            driver.sync_one_way(dbs[peer], dbs[db])
    except (DuplicateKey, NotFound):
        pass


@settings(deadline=None, max_examples=75)
@given(full_script())
def test_random_scripts_converge(script):
    num_dbs, steps = script
    dbs = open_dbs(num_dbs)
    driver = SyncDriver()

    for step in steps:
        run_step(dbs, driver, step)

    driver.sync_all(dbs)
    assert_converged(dbs, "Posts")
    for db in dbs:
        db.close()


@settings(deadline=None, max_examples=50)
@given(full_script(), integers(0, 2 ** 32 - 1))
def test_arrival_order_does_not_matter(script, seed):
    num_dbs, steps = script
    dbs = open_dbs(num_dbs)
    driver = SyncDriver()
    for step in steps:
        run_step(dbs, driver, step)

    changes = [change for db in dbs for change in export_changes(db)]
    shuffled = list(changes)
    random.Random(seed).shuffle(shuffled)

    left = Replica(":memory:", [POSTS], site_id="site-y").open()
    right = Replica(":memory:", [POSTS], site_id="site-z").open()
    MergeEngine(left).apply_all(changes)
    MergeEngine(right).apply_all(shuffled)
    # Applying everything a second time is a no-op.
    MergeEngine(right).apply_all(changes)

    assert_converged([left, right], "Posts")
    for db in [*dbs, left, right]:
        db.close()
