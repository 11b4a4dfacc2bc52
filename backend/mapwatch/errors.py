"""Typed failures raised by the ingestion and query engine.

Row-level dump corruption is not an error: the parser records and skips it.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mapwatch.models.schemas import SkippedRow


class MapwatchError(Exception):
    """Base class for every engine failure."""


class FetchError(MapwatchError):
    """Network failure, timeout or non-success response while downloading a dump."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ParseError(MapwatchError):
    """The dump is not recognisable or yielded zero valid rows."""

    def __init__(self, message: str, skipped: list[SkippedRow] | None = None):
        super().__init__(message)
        self.skipped = skipped or []


class StoreError(MapwatchError):
    """Snapshot persistence failed; the previously visible snapshot is intact."""


class NotFound(MapwatchError):
    """No snapshot exists for the requested server/date."""

    def __init__(self, server_id: int, snapshot_date=None):
        if snapshot_date is None:
            message = f"No snapshots for server {server_id}"
        else:
            message = f"No snapshot for server {server_id} on {snapshot_date}"
        super().__init__(message)
        self.server_id = server_id
        self.snapshot_date = snapshot_date


class IngestStage(str, Enum):
    FETCH = "fetch"
    PARSE = "parse"
    STORE = "store"


class IngestError(MapwatchError):
    """An ingestion run failed at `stage`; the original error is chained as __cause__."""

    def __init__(self, stage: IngestStage, server_id: int, cause: Exception):
        super().__init__(f"Ingestion for server {server_id} failed during {stage.value}: {cause}")
        self.stage = stage
        self.server_id = server_id
        self.cause = cause
