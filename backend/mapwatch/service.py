"""Query operations exposed to the transport layer.

Each method returns a result value or raises one of the typed failures in
`mapwatch.errors`; callers map those to status codes.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from mapwatch.analysis.growth import find_inactive, settlement_growth
from mapwatch.analysis.quadrants import settlements_near
from mapwatch.analysis.rankings import alliance_stats, world_info
from mapwatch.errors import NotFound
from mapwatch.ingestion import IngestionOrchestrator
from mapwatch.models.schemas import (
    AllianceStat,
    GrowthRecord,
    IngestResult,
    Quadrant,
    Settlement,
    Snapshot,
    SnapshotInfo,
    WorldInfo,
)
from mapwatch.snapshot_store import SnapshotStore


class MapwatchService:
    def __init__(self, store: SnapshotStore, orchestrator: Optional[IngestionOrchestrator] = None):
        self.store = store
        self.orchestrator = orchestrator or IngestionOrchestrator(store)

    async def ingest(self, server_id: int, url: str, day: Optional[date] = None) -> IngestResult:
        return await self.orchestrator.ingest(server_id, url, day)

    def snapshots(self, server_id: int, limit: Optional[int] = None) -> list[SnapshotInfo]:
        return self.store.list_snapshots(server_id, limit)

    def get_snapshot(self, server_id: int, day: Optional[date] = None) -> Snapshot:
        if day is None:
            return self.store.latest(server_id)
        return self.store.get(server_id, day)

    def nearby(
        self, server_id: int, x: int, y: int, radius: int = 10, day: Optional[date] = None
    ) -> list[Settlement]:
        return settlements_near(self.get_snapshot(server_id, day).settlements, x, y, radius)

    def growth(self, server_id: int, quadrant: Quadrant | str, days: int) -> list[GrowthRecord]:
        """Inactive settlements in a quadrant as of the latest snapshot."""
        if days < 1:
            raise ValueError("days must be >= 1")
        records = settlement_growth(self.store, server_id, self.store.latest_date(server_id), days)
        return find_inactive(records, quadrant, days)

    def world_info(self, server_id: int, top_n_players: int = 10) -> WorldInfo:
        return world_info(self.store.latest(server_id), top_n_players)

    def alliance_info(self, server_id: int, top_n: int = 10) -> list[AllianceStat]:
        dates = self.store.list_dates(server_id, limit=2)
        if not dates:
            raise NotFound(server_id)
        latest = self.store.get(server_id, dates[0])
        previous = self.store.get(server_id, dates[1]) if len(dates) > 1 else None
        return alliance_stats(latest, previous, top_n)

    def remove_server(self, server_id: int) -> int:
        return self.store.drop_server(server_id)
