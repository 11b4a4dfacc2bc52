"""HTTP surface: status-code mapping and response shapes."""

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from factories import dump, dump_row, village
from mapwatch.errors import FetchError
from mapwatch.ingestion import IngestionOrchestrator
from mapwatch.main import app
from mapwatch.routers.snapshots import get_service
from mapwatch.service import MapwatchService

DAY = date(2026, 10, 10)
URL = "http://ts9.example.com/map.sql"


@pytest.fixture
def service(store):
    async def fetch(url):
        if url != URL:
            raise FetchError("HTTP 404", url=url, status_code=404)
        return dump([dump_row(1, 5, 5, 300, alliance="Red", aid=1)]).encode()

    service = MapwatchService(store, IngestionOrchestrator(store, fetch))
    app.dependency_overrides[get_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


@pytest.fixture
def client(service):
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ingest_then_query(client):
    resp = client.post("/api/servers/9/ingest", json={"url": URL, "snapshot_date": str(DAY)})
    assert resp.status_code == 200
    assert resp.json()["settlement_count"] == 1

    snap = client.get("/api/servers/9/snapshot").json()
    assert snap["snapshot_date"] == str(DAY)
    assert snap["settlements"][0]["population"] == 300

    listing = client.get("/api/servers/9/snapshots").json()
    assert [s["snapshot_date"] for s in listing["snapshots"]] == [str(DAY)]

    info = client.get("/api/servers/9/world-info").json()
    assert info["total_population"] == 300

    alliances = client.get("/api/servers/9/alliances", params={"top_n": 5}).json()
    assert alliances["alliances"][0]["alliance"] == "Red"


def test_ingest_failures_map_to_status_codes(client):
    resp = client.post("/api/servers/9/ingest", json={"url": "http://gone/map.sql"})
    assert resp.status_code == 502


def test_unknown_server_is_404(client):
    assert client.get("/api/servers/404/world-info").status_code == 404
    assert client.get("/api/servers/404/snapshot", params={"date": "2026-01-01"}).status_code == 404


def test_growth_endpoint(client, store):
    for i in range(4):
        store.commit(5, DAY + timedelta(days=i), [
            village(10, 10, 100, world_id=1, player="Idle"),
            village(-10, -10, 100, world_id=2, player="South"),
        ])

    resp = client.get("/api/servers/5/growth", params={"quadrant": "NE", "days": 3})
    assert resp.status_code == 200
    body = resp.json()
    assert [v["world_id"] for v in body["villages"]] == [1]
    assert body["villages"][0]["days_without_growth"] == 3


def test_growth_rejects_bad_quadrant(client):
    assert client.get("/api/servers/5/growth", params={"quadrant": "UP"}).status_code == 422


def test_villages_near(client, store):
    store.commit(6, DAY, [village(0, 0, 10), village(2, 2, 20), village(50, 50, 30)])
    resp = client.get("/api/servers/6/villages/near", params={"x": 0, "y": 0, "radius": 5})
    assert [(v["x"], v["y"]) for v in resp.json()] == [(0, 0), (2, 2)]


def test_remove_server_snapshots(client, store):
    store.commit(8, DAY, [village(1, 1, 10)])
    assert client.delete("/api/servers/8/snapshots").json() == {"server_id": 8, "removed": 1}
    assert client.get("/api/servers/8/snapshot").status_code == 404
