from functools import lru_cache

from sqlalchemy import Engine, create_engine

from mapwatch.config import settings
from mapwatch.models.db_models import Base


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Worker threads from asyncio.to_thread share the engine
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine(settings.database_url)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
