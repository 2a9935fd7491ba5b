"""
Clocks used for merge ordering and incremental sync.

ColumnClock orders competing writes to a single (row, column) cell.
VersionVector records, per remote site, how far this replica has pulled
that site's change log.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, NamedTuple
from copy import deepcopy


class ColumnClock(NamedTuple):
    """
    Version of one cell, with the site that wrote it.

    Tuple ordering gives the merge order: higher version wins, and the
    site id breaks ties between equal versions.
    """

    version: int
    site_id: str


@dataclass
class VersionVector:
    """
    Highest database version pulled from each site.

    Counters only move forward; merging takes the max per site.
    """

    counters: Dict[str, int] = field(default_factory=dict)

    def advance(self, site_id: str, version: int) -> "VersionVector":
        """
        Record that changes up to `version` have been pulled from a site.

        Args:
            site_id: The site the changes were pulled from
            version: Highest database version pulled

        Returns:
            New VersionVector; a lower version leaves the counter unchanged
        """
        new_counters = deepcopy(self.counters)
        new_counters[site_id] = max(new_counters.get(site_id, 0), version)
        return VersionVector(counters=new_counters)

    def get(self, site_id: str) -> int:
        """Get counter for a site."""
        return self.counters.get(site_id, 0)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.counters, sort_keys=True)

    @classmethod
    def from_json(cls, json_str: str) -> "VersionVector":
        """Deserialize from JSON string."""
        return cls(counters=json.loads(json_str))
