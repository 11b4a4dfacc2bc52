import pytest

from mapwatch.db import make_engine
from mapwatch.snapshot_store import SnapshotStore


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'mapwatch.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    store = SnapshotStore(engine, batch_size=50)
    store.init_schema()
    return store
