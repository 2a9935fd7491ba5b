"""
Convergence checks.

After replicas exchange their change logs they must return the same rows.
"""

from typing import List, Optional, Sequence

from .errors import ReconciliationMismatch
from .replica import Replica
from .sync import SyncDriver


def assert_converged(replicas: Sequence[Replica], table_name: str) -> List[tuple]:
    """
    Check that replicas hold identical rows for a table.

    Args:
        replicas: Replicas to compare, pairwise in order
        table_name: Table to compare

    Returns:
        The common rows

    Raises:
        ReconciliationMismatch: With both sides' rows, on the first pair that differs
    """
    rows = [replica.read_all(table_name) for replica in replicas]
    for left, right in zip(rows, rows[1:]):
        if left != right:
            raise ReconciliationMismatch(left, right)
    return rows[0] if rows else []


def sync_and_reconcile(
    a: Replica,
    b: Replica,
    table_name: str,
    driver: Optional[SyncDriver] = None,
) -> List[tuple]:
    """Sync two replicas both ways, then check they converged."""
    driver = driver or SyncDriver()
    driver.sync_bidirectional(a, b)
    return assert_converged([a, b], table_name)
