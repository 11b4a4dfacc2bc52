from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

from mapwatch.models.schemas import TEXT_MAX_LENGTH


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotDB(Base):
    """Catalog of committed snapshots: one row per (server, day).

    `table_name` points at the partition holding that day's settlements.
    Swapping it is what makes a re-ingested day visible.
    """
    __tablename__ = "snapshots"
    __table_args__ = (
        UniqueConstraint("server_id", "snapshot_date", name="uq_snapshots_server_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, nullable=False, index=True)
    snapshot_date = Column(Date, nullable=False)
    table_name = Column(String(128), nullable=False)
    settlement_count = Column(Integer, nullable=False, default=0)
    skipped_row_count = Column(Integer, nullable=False, default=0)
    source_url = Column(String(1024))
    committed_at = Column(DateTime(timezone=True), default=_utcnow)


PARTITION_PREFIX = "settlements"


def partition_table_name(server_id: int, snapshot_date: date, generation: str) -> str:
    return f"{PARTITION_PREFIX}_s{int(server_id)}_{snapshot_date:%Y_%m_%d}_{generation}"


def partition_table(table_name: str) -> Table:
    """Schema of one snapshot partition (a private MetaData per table)."""
    return Table(
        table_name,
        MetaData(),
        Column("row_id", Integer, primary_key=True, autoincrement=True),
        Column("world_id", Integer),
        Column("x", Integer, nullable=False),
        Column("y", Integer, nullable=False),
        Column("tribe", Integer),
        Column("settlement_id", Integer),
        Column("name", String(TEXT_MAX_LENGTH), nullable=False),
        Column("player_id", Integer),
        Column("player", String(TEXT_MAX_LENGTH)),
        Column("alliance_id", Integer),
        Column("alliance", String(TEXT_MAX_LENGTH)),
        Column("population", Integer, nullable=False, default=0),
        Column("is_capital", Boolean, nullable=False, default=False),
        Column("is_wonder", Boolean, nullable=False, default=False),
        Column("wonder_name", String(TEXT_MAX_LENGTH)),
        Index(f"ix_{table_name}_xy", "x", "y"),
        Index(f"ix_{table_name}_population", "population"),
    )


SETTLEMENT_COLUMNS = (
    "world_id", "x", "y", "tribe", "settlement_id", "name", "player_id",
    "player", "alliance_id", "alliance", "population", "is_capital",
    "is_wonder", "wonder_name",
)
