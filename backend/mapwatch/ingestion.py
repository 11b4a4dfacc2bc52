"""Fetch -> parse -> commit -> prune, once per server and calendar day."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from loguru import logger

from mapwatch._keyed_locks import AsyncKeyedLocks
from mapwatch.config import ServerSource, settings
from mapwatch.errors import FetchError, IngestError, IngestStage, MapwatchError
from mapwatch.models.schemas import IngestResult
from mapwatch.snapshot_store import SnapshotStore
from mapwatch.tools.dump_fetch import fetch_dump
from mapwatch.tools.dump_parser import parse_dump

Fetcher = Callable[[str], Awaitable[bytes]]

_STATE_HISTORY = 1024


class IngestState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class IngestionOrchestrator:
    """Runs ingestions; same (server, day) runs queue behind each other.

    Runs for different servers share nothing but the store and proceed
    concurrently.
    """

    def __init__(
        self,
        store: SnapshotStore,
        fetcher: Fetcher = fetch_dump,
        *,
        retention_days: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.retention_days = retention_days if retention_days is not None else settings.retention_days
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else settings.fetch_timeout_seconds
        self._locks = AsyncKeyedLocks()
        # most recently touched runs last; the oldest are forgotten past _STATE_HISTORY
        self._states: OrderedDict[tuple[int, date], IngestState] = OrderedDict()

    def state(self, server_id: int, day: date) -> IngestState:
        return self._states.get((server_id, day), IngestState.IDLE)

    def _enter(self, key: tuple[int, date], state: IngestState) -> None:
        self._states[key] = state
        self._states.move_to_end(key)
        while len(self._states) > _STATE_HISTORY:
            self._states.popitem(last=False)
        logger.debug("[ingest] server {} {} -> {}", key[0], key[1], state.value)

    def _fail(self, key: tuple[int, date], stage: IngestStage, cause: Exception) -> IngestError:
        self._enter(key, IngestState.FAILED)
        if isinstance(cause, MapwatchError):
            logger.error("[ingest] server {} failed during {}: {}", key[0], stage.value, cause)
        else:
            logger.opt(exception=cause).error(
                "[ingest] server {} failed during {} with unexpected {}", key[0], stage.value, type(cause).__name__
            )
        return IngestError(stage, key[0], cause)

    async def ingest(
        self,
        server_id: int,
        dump_url: str,
        today: Optional[date] = None,
        *,
        map_radius: Optional[int] = None,
    ) -> IngestResult:
        """Replace today's snapshot of `server_id` with a freshly fetched dump.

        Raises IngestError tagged with the failing stage; every failure, expected
        or not, leaves the run FAILED. A failed or cancelled run never leaves a
        partial snapshot behind.
        """
        today = today or utc_today()
        key = (server_id, today)
        if self._locks.busy(key):
            logger.info("[ingest] server {} {} already running, queued", server_id, today)

        async with self._locks.hold(key):
            try:
                return await self._run(key, dump_url, map_radius)
            except asyncio.CancelledError:
                stage = self.state(*key)
                self._enter(key, IngestState.FAILED)
                logger.warning("[ingest] server {} cancelled while {}", server_id, stage.value)
                raise

    async def _run(self, key: tuple[int, date], dump_url: str, map_radius: Optional[int]) -> IngestResult:
        server_id, today = key
        start_time = time.monotonic()

        self._enter(key, IngestState.FETCHING)
        try:
            raw = await asyncio.wait_for(self.fetcher(dump_url), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            err = FetchError(f"Timed out after {self.fetch_timeout}s fetching {dump_url}", url=dump_url)
            raise self._fail(key, IngestStage.FETCH, err) from e
        except Exception as e:
            raise self._fail(key, IngestStage.FETCH, e) from e

        self._enter(key, IngestState.PARSING)
        try:
            parsed = await asyncio.to_thread(parse_dump, raw, map_radius=map_radius)
        except Exception as e:
            raise self._fail(key, IngestStage.PARSE, e) from e

        # Once the commit thread starts it runs to completion even if this
        # coroutine is cancelled; the store swap keeps it all-or-nothing.
        self._enter(key, IngestState.COMMITTING)
        try:
            await asyncio.to_thread(
                self.store.commit,
                server_id,
                today,
                parsed.settlements,
                skipped_row_count=parsed.skipped_row_count,
                source_url=dump_url,
            )
        except Exception as e:
            raise self._fail(key, IngestStage.STORE, e) from e

        pruned = 0
        try:
            pruned = await asyncio.to_thread(self.store.prune, server_id, self.retention_days)
        except Exception as e:
            # Today's snapshot is already committed; retention catches up next run.
            logger.error("[ingest] server {} retention prune failed: {}", server_id, e)

        self._enter(key, IngestState.DONE)
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.success(
            "[ingest] server {} {}: {} settlements, {} skipped, {} pruned — {}ms",
            server_id, today, len(parsed.settlements), parsed.skipped_row_count, pruned, duration_ms,
        )
        return IngestResult(
            server_id=server_id,
            snapshot_date=today,
            settlement_count=len(parsed.settlements),
            skipped_row_count=parsed.skipped_row_count,
            pruned_count=pruned,
            duration_ms=duration_ms,
        )

    async def ingest_all(
        self, sources: Iterable[ServerSource], today: Optional[date] = None
    ) -> dict[int, IngestResult | IngestError]:
        """Ingest every active source concurrently; one failure never stops the others."""
        active = [s for s in sources if s.is_active]
        today = today or utc_today()
        logger.info("[ingest] sweep of {} servers for {}", len(active), today)
        outcomes = await asyncio.gather(
            *(self.ingest(s.id, s.dump_url, today, map_radius=s.map_radius) for s in active),
            return_exceptions=True,
        )
        results: dict[int, IngestResult | IngestError] = {}
        for source, outcome in zip(active, outcomes):
            # ingest turns every Exception into IngestError; only cancellation
            # and interpreter exits come back as anything else
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            results[source.id] = outcome
        return results
