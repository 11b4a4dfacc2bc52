"""Per-settlement growth and inactivity across a chain of daily snapshots."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional, Sequence

from loguru import logger

from mapwatch.analysis.quadrants import filter_by_quadrant, quadrant_of
from mapwatch.errors import NotFound
from mapwatch.models.schemas import (
    GrowthRecord,
    GrowthStatus,
    Quadrant,
    Settlement,
    Snapshot,
)
from mapwatch.snapshot_store import SnapshotStore


def days_without_growth(populations: Sequence[Optional[int]]) -> int:
    """Length of the no-growth streak ending at the newest day.

    `populations` runs newest to oldest; None means the settlement was absent
    that day, which ends the streak like the start of the data does. A step
    counts when the newer population is equal to or below the older one.

    The streak is measured in snapshot steps, not calendar days: a day with
    no ingestion is simply absent from the chain, so a settlement idle for
    three days across a missed ingestion shows a streak of 2.
    """
    streak = 0
    for newer, older in zip(populations, populations[1:]):
        if newer is None or older is None or newer > older:
            break
        streak += 1
    return streak


def compute_growth(chain: Sequence[Snapshot]) -> list[GrowthRecord]:
    """Compare the newest snapshot of `chain` against the oldest.

    `chain` must be one server's snapshots in ascending date order. Settlements
    gone from the newest snapshot are left out (see `removed_settlements`).
    """
    if not chain:
        return []
    latest, earlier = chain[-1], chain[0]
    # newest first, one identity -> population map per day
    populations = [
        {s.identity: s.population for s in snap.settlements} for snap in reversed(chain)
    ]
    earlier_by_id = earlier.by_identity()

    records = []
    for s in latest.settlements:
        before = earlier_by_id.get(s.identity)
        streak = days_without_growth([day.get(s.identity) for day in populations])
        records.append(GrowthRecord(
            world_id=s.world_id,
            x=s.x,
            y=s.y,
            name=s.name,
            player=s.player,
            alliance=s.alliance,
            tribe=s.tribe,
            quadrant=quadrant_of(s.x, s.y),
            population=s.population,
            previous_population=before.population if before else None,
            population_delta=s.population - before.population if before else None,
            days_without_growth=streak,
            status=GrowthStatus.TRACKED if before else GrowthStatus.NEW,
        ))
    return records


def removed_settlements(latest: Snapshot, earlier: Snapshot) -> list[Settlement]:
    """Settlements of `earlier` that no longer exist in `latest`."""
    current = latest.by_identity()
    return [s for s in earlier.settlements if s.identity not in current]


def growth_chain(
    store: SnapshotStore, server_id: int, as_of_date: date, lookback_days: int
) -> list[Snapshot]:
    """Snapshots from `lookback_days` before `as_of_date` up to it, oldest first.

    With shorter history the chain simply starts at the oldest snapshot held.
    """
    if lookback_days < 0:
        raise ValueError("lookback_days must be >= 0")
    start = as_of_date - timedelta(days=lookback_days)
    chain = store.range(server_id, start, as_of_date)
    if not chain or chain[-1].snapshot_date != as_of_date:
        raise NotFound(server_id, as_of_date)
    return chain


def settlement_growth(
    store: SnapshotStore, server_id: int, as_of_date: date, lookback_days: int
) -> list[GrowthRecord]:
    chain = growth_chain(store, server_id, as_of_date, lookback_days)
    records = compute_growth(chain)
    logger.debug(
        "[growth] server {} as of {}: {} settlements over {} snapshots",
        server_id, as_of_date, len(records), len(chain),
    )
    return records


def find_inactive(
    records: Sequence[GrowthRecord], quadrant: Quadrant | str, days: int
) -> list[GrowthRecord]:
    """Player-owned settlements in `quadrant` that have not grown for `days` or more."""
    hits = [
        r for r in filter_by_quadrant(records, quadrant)
        if r.player and r.days_without_growth >= days
    ]
    hits.sort(key=lambda r: (-r.days_without_growth, -r.population, r.name))
    return hits
