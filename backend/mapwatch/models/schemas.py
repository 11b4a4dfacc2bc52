from __future__ import annotations

from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Annotated, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

# Partition tables store 32-bit INTEGER and VARCHAR(255) columns
INT32_MAX = 2**31 - 1
TEXT_MAX_LENGTH = 255

StoredInt = Annotated[int, Field(ge=-INT32_MAX - 1, le=INT32_MAX)]
StoredText = Annotated[str, Field(max_length=TEXT_MAX_LENGTH)]


class Tribe(IntEnum):
    ROMANS = 1
    TEUTONS = 2
    GAULS = 3
    NATURE = 4
    NATARS = 5
    EGYPTIANS = 6
    HUNS = 7
    SPARTANS = 8
    VIKINGS = 9


def tribe_name(code: Optional[int]) -> str:
    """Human label for a tribe code; unknown codes are kept as their number."""
    if code is None:
        return "Unknown"
    try:
        return Tribe(code).name.title()
    except ValueError:
        return str(code)


class Quadrant(str, Enum):
    NE = "NE"
    SE = "SE"
    SW = "SW"
    NW = "NW"


class IdentityKind(str, Enum):
    WORLD_ID = "world_id"
    COORDINATES = "coordinates"


class SettlementIdentity(NamedTuple):
    """Stable key of a settlement within one server.

    The world id wins when the dump supplies one; otherwise the coordinate
    pair (unique within a server at a given time) stands in.
    """
    kind: IdentityKind
    key: tuple[int, ...]

    @classmethod
    def resolve(cls, world_id: Optional[int], x: int, y: int) -> SettlementIdentity:
        if world_id is not None:
            return cls(IdentityKind.WORLD_ID, (world_id,))
        return cls(IdentityKind.COORDINATES, (x, y))


# --- Snapshot contents ---


class Settlement(BaseModel):
    """One settlement row of a snapshot. Never mutated after ingestion."""
    model_config = ConfigDict(frozen=True)

    world_id: Optional[StoredInt] = None
    x: StoredInt
    y: StoredInt
    tribe: Optional[StoredInt] = None
    settlement_id: Optional[StoredInt] = None
    name: StoredText
    player_id: Optional[StoredInt] = None
    player: Optional[StoredText] = None
    alliance_id: Optional[StoredInt] = None
    alliance: Optional[StoredText] = None
    population: int = Field(ge=0, le=INT32_MAX)
    is_capital: bool = False
    is_wonder: bool = False
    wonder_name: Optional[StoredText] = None

    _identity: SettlementIdentity = PrivateAttr()

    def model_post_init(self, __context) -> None:
        self._identity = SettlementIdentity.resolve(self.world_id, self.x, self.y)

    @property
    def identity(self) -> SettlementIdentity:
        return self._identity


class Snapshot(BaseModel):
    """Full settlement roster of one server on one calendar day."""
    server_id: int
    snapshot_date: date
    settlements: list[Settlement]

    def by_identity(self) -> dict[SettlementIdentity, Settlement]:
        return {s.identity: s for s in self.settlements}


class SnapshotInfo(BaseModel):
    server_id: int
    snapshot_date: date
    settlement_count: int
    skipped_row_count: int = 0
    source_url: Optional[str] = None
    committed_at: Optional[datetime] = None


# --- Parsing ---


class SkippedRow(BaseModel):
    """Diagnostics for one dump row the parser could not use."""
    line: int
    reason: str
    excerpt: str


class ParseResult(BaseModel):
    settlements: list[Settlement]
    skipped: list[SkippedRow] = []
    statements_seen: int = 0

    @property
    def skipped_row_count(self) -> int:
        return len(self.skipped)


# --- Derived statistics (computed on query, never persisted) ---


class GrowthStatus(str, Enum):
    TRACKED = "tracked"  # present in both compared snapshots
    NEW = "new"  # absent from the earlier snapshot


class GrowthRecord(BaseModel):
    world_id: Optional[int] = None
    x: int
    y: int
    name: str
    player: Optional[str] = None
    alliance: Optional[str] = None
    tribe: Optional[int] = None
    quadrant: Quadrant
    population: int
    previous_population: Optional[int] = None
    population_delta: Optional[int] = None
    days_without_growth: int = 0
    status: GrowthStatus = GrowthStatus.TRACKED


class TribeStat(BaseModel):
    tribe: Optional[int]
    tribe_name: str
    settlement_count: int
    total_population: int


class AllianceStat(BaseModel):
    alliance: str
    member_count: int
    settlement_count: int
    total_population: int
    average_population_per_settlement: float
    population_growth: int = 0
    growth_percentage: float = 0.0


class PlayerStat(BaseModel):
    player: str
    alliance: Optional[str] = None
    tribe: Optional[int] = None
    settlement_count: int
    total_population: int


class WorldInfo(BaseModel):
    server_id: int
    snapshot_date: date
    total_settlements: int
    total_population: int
    total_players: int
    tribe_stats: list[TribeStat]
    top_players: list[PlayerStat]


# --- Ingestion ---


class IngestResult(BaseModel):
    server_id: int
    snapshot_date: date
    settlement_count: int
    skipped_row_count: int
    pruned_count: int = 0
    duration_ms: int = 0
