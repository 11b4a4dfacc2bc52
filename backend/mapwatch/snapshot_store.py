"""Partitioned snapshot storage keyed by (server, day).

Every committed snapshot lives in its own table. The `snapshots` catalog
maps (server_id, snapshot_date) to the table currently holding that day, so:

- commit writes a brand new table, then swaps the catalog row to it in one
  transaction; readers see the old table or the new one, never a mix
- prune and server removal drop whole tables instead of deleting rows
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Iterable, Iterator, Optional

from loguru import logger
from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapwatch._keyed_locks import KeyedLocks
from mapwatch.config import settings
from mapwatch.db import init_db
from mapwatch.errors import NotFound, StoreError
from mapwatch.models.db_models import (
    SETTLEMENT_COLUMNS,
    SnapshotDB,
    partition_table,
    partition_table_name,
)
from mapwatch.models.schemas import Settlement, Snapshot, SnapshotInfo

_READ_ATTEMPTS = 3
_COLUMN_SET = set(SETTLEMENT_COLUMNS)


def _chunks(rows: list[dict], size: int) -> Iterator[list[dict]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _to_info(row: SnapshotDB) -> SnapshotInfo:
    return SnapshotInfo(
        server_id=row.server_id,
        snapshot_date=row.snapshot_date,
        settlement_count=row.settlement_count,
        skipped_row_count=row.skipped_row_count,
        source_url=row.source_url,
        committed_at=row.committed_at,
    )


class SnapshotStore:
    def __init__(self, engine: Engine, *, batch_size: Optional[int] = None):
        self.engine = engine
        self.batch_size = batch_size or settings.insert_batch_size
        self._commit_locks = KeyedLocks()

    def init_schema(self) -> None:
        try:
            init_db(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not create snapshot catalog: {e}") from e

    # --- writes ---

    def commit(
        self,
        server_id: int,
        snapshot_date: date,
        settlements: Iterable[Settlement],
        *,
        skipped_row_count: int = 0,
        source_url: Optional[str] = None,
    ) -> SnapshotInfo:
        """Atomically replace the (server_id, snapshot_date) snapshot with `settlements`."""
        rows = [s.model_dump(include=_COLUMN_SET) for s in settlements]
        if not rows:
            raise StoreError(f"Refusing to commit an empty snapshot for server {server_id}")

        with self._commit_locks.hold((server_id, snapshot_date)):
            name = partition_table_name(server_id, snapshot_date, uuid.uuid4().hex[:8])
            table = partition_table(name)
            try:
                with self.engine.begin() as conn:
                    table.create(conn)
                    for batch in _chunks(rows, self.batch_size):
                        conn.execute(table.insert(), batch)
            except SQLAlchemyError as e:
                self._drop_tables([name])
                raise StoreError(f"Writing partition {name} failed: {e}") from e

            committed_at = datetime.now(timezone.utc)
            try:
                with Session(self.engine) as session, session.begin():
                    row = session.scalars(
                        select(SnapshotDB).where(
                            SnapshotDB.server_id == server_id,
                            SnapshotDB.snapshot_date == snapshot_date,
                        )
                    ).one_or_none()
                    previous = row.table_name if row is not None else None
                    if row is None:
                        row = SnapshotDB(server_id=server_id, snapshot_date=snapshot_date)
                        session.add(row)
                    row.table_name = name
                    row.settlement_count = len(rows)
                    row.skipped_row_count = skipped_row_count
                    row.source_url = source_url
                    row.committed_at = committed_at
            except SQLAlchemyError as e:
                self._drop_tables([name])
                raise StoreError(f"Publishing snapshot {server_id}/{snapshot_date} failed: {e}") from e

        if previous:
            self._drop_tables([previous])
        logger.info(
            "[store] server {} {} committed: {} settlements ({})",
            server_id, snapshot_date, len(rows), "replaced" if previous else "new",
        )
        return SnapshotInfo(
            server_id=server_id,
            snapshot_date=snapshot_date,
            settlement_count=len(rows),
            skipped_row_count=skipped_row_count,
            source_url=source_url,
            committed_at=committed_at,
        )

    def prune(self, server_id: int, keep_last_n: int) -> int:
        """Drop every snapshot of `server_id` except the newest `keep_last_n` days."""
        if keep_last_n < 0:
            raise ValueError("keep_last_n must be >= 0")
        try:
            with Session(self.engine) as session, session.begin():
                rows = session.scalars(
                    select(SnapshotDB)
                    .where(SnapshotDB.server_id == server_id)
                    .order_by(SnapshotDB.snapshot_date.desc())
                    .offset(keep_last_n)
                ).all()
                doomed = [(r.snapshot_date, r.table_name) for r in rows]
                if doomed:
                    session.execute(
                        delete(SnapshotDB).where(SnapshotDB.id.in_([r.id for r in rows]))
                    )
        except SQLAlchemyError as e:
            raise StoreError(f"Pruning server {server_id} failed: {e}") from e

        self._drop_tables([name for _, name in doomed])
        if doomed:
            logger.info(
                "[store] server {} pruned {} snapshots (oldest kept window: {})",
                server_id, len(doomed), keep_last_n,
            )
        return len(doomed)

    def drop_server(self, server_id: int) -> int:
        """Remove every snapshot of a server that the outer system deleted."""
        return self.prune(server_id, keep_last_n=0)

    def _drop_tables(self, names: list[str]) -> None:
        for name in names:
            try:
                with self.engine.begin() as conn:
                    partition_table(name).drop(conn, checkfirst=True)
            except SQLAlchemyError as e:
                # The catalog no longer points here; the table is only an orphan.
                logger.warning("[store] could not drop partition {}: {}", name, e)

    # --- reads ---

    def list_snapshots(self, server_id: int, limit: Optional[int] = None) -> list[SnapshotInfo]:
        """Catalog entries for a server, newest first."""
        stmt = (
            select(SnapshotDB)
            .where(SnapshotDB.server_id == server_id)
            .order_by(SnapshotDB.snapshot_date.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with Session(self.engine) as session:
                return [_to_info(r) for r in session.scalars(stmt).all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Listing snapshots of server {server_id} failed: {e}") from e

    def list_dates(self, server_id: int, limit: Optional[int] = None) -> list[date]:
        return [info.snapshot_date for info in self.list_snapshots(server_id, limit)]

    def latest_date(self, server_id: int) -> date:
        dates = self.list_dates(server_id, limit=1)
        if not dates:
            raise NotFound(server_id)
        return dates[0]

    def get(self, server_id: int, snapshot_date: date) -> Snapshot:
        return Snapshot(
            server_id=server_id,
            snapshot_date=snapshot_date,
            settlements=self._read_settlements(server_id, snapshot_date),
        )

    def latest(self, server_id: int) -> Snapshot:
        return self.get(server_id, self.latest_date(server_id))

    def range(self, server_id: int, start: date, end: date) -> list[Snapshot]:
        """Snapshots with start <= date <= end, oldest first."""
        dates = sorted(d for d in self.list_dates(server_id) if start <= d <= end)
        return [self.get(server_id, d) for d in dates]

    def _table_name(self, server_id: int, snapshot_date: date) -> Optional[str]:
        with Session(self.engine) as session:
            return session.scalars(
                select(SnapshotDB.table_name).where(
                    SnapshotDB.server_id == server_id,
                    SnapshotDB.snapshot_date == snapshot_date,
                )
            ).one_or_none()

    def _read_settlements(self, server_id: int, snapshot_date: date) -> list[Settlement]:
        # A concurrent commit may swap and drop the table between the catalog
        # lookup and the row scan; re-resolve and read the new generation.
        last_error: Optional[SQLAlchemyError] = None
        for _ in range(_READ_ATTEMPTS):
            try:
                name = self._table_name(server_id, snapshot_date)
            except SQLAlchemyError as e:
                raise StoreError(f"Catalog lookup failed: {e}") from e
            if name is None:
                raise NotFound(server_id, snapshot_date)
            table = partition_table(name)
            try:
                with self.engine.connect() as conn:
                    result = conn.execute(
                        select(table).order_by(table.c.population.desc(), table.c.row_id)
                    ).mappings()
                    return [
                        Settlement(**{col: row[col] for col in SETTLEMENT_COLUMNS})
                        for row in result
                    ]
            except SQLAlchemyError as e:
                last_error = e
                logger.debug("[store] partition {} vanished mid-read, retrying", name)
        raise StoreError(f"Reading snapshot {server_id}/{snapshot_date} failed: {last_error}") from last_error
