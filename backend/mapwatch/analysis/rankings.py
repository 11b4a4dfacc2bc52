"""Aggregate statistics over one snapshot (tribes, alliances, players, world)."""

from __future__ import annotations

from collections import defaultdict
from typing import Optional

from mapwatch.models.schemas import (
    AllianceStat,
    PlayerStat,
    Snapshot,
    TribeStat,
    WorldInfo,
    tribe_name,
)


def tribe_stats(snapshot: Snapshot) -> list[TribeStat]:
    counts: dict[Optional[int], int] = defaultdict(int)
    totals: dict[Optional[int], int] = defaultdict(int)
    for s in snapshot.settlements:
        counts[s.tribe] += 1
        totals[s.tribe] += s.population

    stats = [
        TribeStat(
            tribe=tribe,
            tribe_name=tribe_name(tribe),
            settlement_count=counts[tribe],
            total_population=totals[tribe],
        )
        for tribe in counts
    ]
    stats.sort(key=lambda t: (-t.total_population, t.tribe if t.tribe is not None else -1))
    return stats


def _alliance_totals(snapshot: Snapshot) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for s in snapshot.settlements:
        if s.alliance:
            totals[s.alliance] += s.population
    return totals


def alliance_stats(
    snapshot: Snapshot,
    previous_snapshot: Optional[Snapshot] = None,
    top_n: Optional[int] = 10,
) -> list[AllianceStat]:
    """Largest alliances by population with growth against the previous day.

    Growth is zero when there is no previous snapshot. An alliance missing from
    the previous snapshot grows by its whole population at 0.0 percent.
    """
    members: dict[str, set[str]] = defaultdict(set)
    counts: dict[str, int] = defaultdict(int)
    totals = _alliance_totals(snapshot)
    for s in snapshot.settlements:
        if not s.alliance:
            continue
        counts[s.alliance] += 1
        if s.player:
            members[s.alliance].add(s.player)

    before = _alliance_totals(previous_snapshot) if previous_snapshot is not None else None

    stats = []
    for name, total in totals.items():
        growth, pct = 0, 0.0
        if before is not None:
            prev_total = before.get(name, 0)
            growth = total - prev_total
            pct = round(growth / prev_total * 100, 2) if prev_total else 0.0
        stats.append(AllianceStat(
            alliance=name,
            member_count=len(members[name]),
            settlement_count=counts[name],
            total_population=total,
            average_population_per_settlement=round(total / counts[name], 2),
            population_growth=growth,
            growth_percentage=pct,
        ))
    stats.sort(key=lambda a: (-a.total_population, a.alliance))
    return stats[:top_n] if top_n is not None else stats


def player_stats(snapshot: Snapshot) -> list[PlayerStat]:
    """Every owning player ranked by summed population.

    Ties: more settlements first, then player name ascending.
    """
    counts: dict[str, int] = defaultdict(int)
    totals: dict[str, int] = defaultdict(int)
    alliance: dict[str, Optional[str]] = {}
    tribe: dict[str, Optional[int]] = {}
    for s in snapshot.settlements:
        if not s.player:
            continue
        counts[s.player] += 1
        totals[s.player] += s.population
        if alliance.get(s.player) is None:
            alliance[s.player] = s.alliance
        if tribe.get(s.player) is None:
            tribe[s.player] = s.tribe

    stats = [
        PlayerStat(
            player=name,
            alliance=alliance[name],
            tribe=tribe[name],
            settlement_count=counts[name],
            total_population=totals[name],
        )
        for name in counts
    ]
    stats.sort(key=lambda p: (-p.total_population, -p.settlement_count, p.player))
    return stats


def world_info(snapshot: Snapshot, top_n_players: int = 10) -> WorldInfo:
    players = player_stats(snapshot)
    return WorldInfo(
        server_id=snapshot.server_id,
        snapshot_date=snapshot.snapshot_date,
        total_settlements=len(snapshot.settlements),
        total_population=sum(s.population for s in snapshot.settlements),
        total_players=len(players),
        tribe_stats=tribe_stats(snapshot),
        top_players=players[:top_n_players],
    )
