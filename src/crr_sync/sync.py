"""
Sync between replicas.

Sync is change-log exchange: read the source's log, run every entry
through the destination's merge engine. Because merging is commutative
and idempotent, a pass that fails halfway can simply be run again.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from .changes import Change
from .config import SyncConfig
from .errors import ReplicaUnavailable
from .merge import MergeEngine, MergeOutcome
from .replica import Replica

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Result of a one-way sync pass."""
    source_site: str
    destination_site: str
    since: int
    upto: int
    exported: int = 0
    adopted: int = 0
    discarded: int = 0
    skipped: int = 0


class SyncDriver:
    """
    Moves changes between replicas.

    With incremental sync enabled, each destination remembers the highest
    db_version it pulled from every source and resumes from there.
    """

    def __init__(self, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig()

    def export_changes(
        self,
        replica: Replica,
        since_database_version: int = 0,
        upto_database_version: Optional[int] = None,
    ) -> Iterator[Change]:
        """
        Iterate a replica's changes after a database version.

        Lazy and finite: the log is read in batches, and iteration stops
        at the replica's db_version as of the first batch, so changes
        written meanwhile are left for the next pass. Each call starts over.

        Args:
            replica: Replica to read from
            since_database_version: Yield changes after this version
            upto_database_version: Last version to yield; defaults to current

        Yields:
            Changes ordered by database version
        """
        if upto_database_version is None:
            upto_database_version = replica.db_version

        batch_size = self.config.batch_size
        db_version, seq = since_database_version, None
        while True:
            batch = replica.fetch_changes(db_version, seq, batch_size)
            if not batch:
                return
            for seq, change in batch:
                if change.db_version > upto_database_version:
                    return
                yield change

            if len(batch) < batch_size:
                return
            db_version = batch[-1][1].db_version

    def sync_one_way(
        self,
        source: Replica,
        destination: Replica,
        since: Optional[int] = None,
    ) -> SyncResult:
        """
        Apply a source replica's changes to a destination replica.

        Args:
            source: Replica to pull from
            destination: Replica to merge into
            since: Source db_version to start after; None resumes from the
                version the destination last pulled (or 0 when incremental
                sync is off)

        Returns:
            SyncResult with counts

        Raises:
            ReplicaUnavailable: If either replica is not open
        """
        for replica in (source, destination):
            if not replica.is_open:
                raise ReplicaUnavailable(f"Replica at {replica.db_path} is not open")
        if source is destination:
            raise ValueError("Cannot sync a replica with itself")

        source_site = source.site_id
        destination_site = destination.site_id
        if since is None:
            since = destination.peer_versions().get(source_site) if self.config.incremental else 0
        upto = source.db_version

        result = SyncResult(
            source_site=source_site,
            destination_site=destination_site,
            since=since,
            upto=upto,
        )
        engine = MergeEngine(destination)

        for change in self.export_changes(source, since, upto):
            result.exported += 1
            # The destination already holds its own writes, or something newer.
            if change.site_id == destination_site:
                result.skipped += 1
                continue
            if engine.apply(change) is MergeOutcome.ADOPTED:
                result.adopted += 1
            else:
                result.discarded += 1

        destination.advance_peer(source_site, upto)

        logger.info(
            f"Synced {source_site} -> {destination_site} (db_version {since}..{upto}): "
            f"{result.exported} exported, {result.adopted} adopted, "
            f"{result.discarded} discarded, {result.skipped} skipped"
        )
        return result

    def sync_bidirectional(self, a: Replica, b: Replica) -> Tuple[SyncResult, SyncResult]:
        """
        Sync both ways: a to b, then b to a.

        Returns:
            (a -> b result, b -> a result)
        """
        return self.sync_one_way(a, b), self.sync_one_way(b, a)

    def sync_all(self, replicas: Sequence[Replica]) -> List[SyncResult]:
        """
        Converge any number of replicas through the first one.

        The first replica pulls from every other, then every other pulls
        from the first.

        Returns:
            Results of all passes, in the order they ran
        """
        if len(replicas) < 2:
            return []

        hub, *spokes = replicas
        results = [self.sync_one_way(spoke, hub) for spoke in spokes]
        results.extend(self.sync_one_way(hub, spoke) for spoke in spokes)
        return results


def export_changes(replica: Replica, since_database_version: int = 0) -> Iterator[Change]:
    """Iterate a replica's changes with the default driver."""
    return SyncDriver().export_changes(replica, since_database_version)


def sync_one_way(source: Replica, destination: Replica) -> SyncResult:
    """Convenience function: one full one-way pass."""
    return SyncDriver(SyncConfig(incremental=False)).sync_one_way(source, destination)


def sync_bidirectional(a: Replica, b: Replica) -> Tuple[SyncResult, SyncResult]:
    """Convenience function: full sync in both directions."""
    return SyncDriver(SyncConfig(incremental=False)).sync_bidirectional(a, b)


def sync_all(replicas: Sequence[Replica]) -> List[SyncResult]:
    """Convenience function: converge all replicas through the first."""
    return SyncDriver(SyncConfig(incremental=False)).sync_all(replicas)
