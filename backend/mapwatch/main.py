import asyncio
from contextlib import asynccontextmanager

from loguru import logger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mapwatch.config import settings
from mapwatch.errors import IngestError
from mapwatch.logging_config import setup_logging
from mapwatch.routers import snapshots
from mapwatch.routers.snapshots import get_service

setup_logging()

scheduler = AsyncIOScheduler()


async def daily_ingest():
    """Ingest today's dump of every configured active server."""
    if not settings.servers:
        logger.info("[scheduler] no servers configured, nothing to ingest")
        return
    service = await asyncio.to_thread(get_service)
    results = await service.orchestrator.ingest_all(settings.servers)
    failed = [sid for sid, r in results.items() if isinstance(r, IngestError)]
    logger.info(
        "[scheduler] daily sweep done: {} ok, {} failed {}",
        len(results) - len(failed), len(failed), failed or "",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler.add_job(
        daily_ingest,
        "cron",
        hour=settings.ingest_cron_hour,
        minute=settings.ingest_cron_minute,
        id="daily_ingest",
    )
    scheduler.start()
    logger.info(
        "Scheduler started — daily ingest at {:02d}:{:02d} for {} servers",
        settings.ingest_cron_hour, settings.ingest_cron_minute, len(settings.servers),
    )
    yield
    scheduler.shutdown()


app = FastAPI(title="Mapwatch — snapshot & growth engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(snapshots.router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/ingest/trigger")
async def trigger_daily_ingest():
    """Run the daily sweep now instead of waiting for the cron slot."""
    asyncio.create_task(daily_ingest())
    return {"status": "ingest_triggered", "servers": len(settings.servers)}
