from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import argparse
import logging

from github_activity_sync import config
from github_activity_sync.api import router as api_router
from github_activity_sync.database import get_engine, init_db
from github_activity_sync.hooks import ActivityCacheHooks
from github_activity_sync.pipeline import SingleFlight, SyncOrchestrator
from github_activity_sync.scheduler import AutoSyncScheduler
from github_activity_sync.storage import SyncStore


parser = argparse.ArgumentParser(description="GitHub activity sync entry point.")
parser.add_argument(
    "--no-scheduler",
    action="store_true",
    help="Run only the API (automatic sync will not start).",
)
args, _ = parser.parse_known_args()
NO_SCHEDULER = args.no_scheduler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine(config.DATABASE_URL)
    init_db(engine)
    store = SyncStore(engine)
    orchestrator = SyncOrchestrator(
        store,
        hooks=ActivityCacheHooks(store),
        single_flight=SingleFlight(),
    )
    scheduler = AutoSyncScheduler(orchestrator, store)
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    # Runs left "running" by a previous process can never finish
    orchestrator.cleanup_stuck_runs()

    if not config.GITHUB_TOKEN:
        logger.warning(
            "No GitHub token provided. Syncs will fail until GITHUB_TOKEN is set."
        )
    try:
        if not NO_SCHEDULER:
            if scheduler.start_from_config():
                logger.info("Started automatic sync scheduler")
        else:
            logger.info("Running in API ONLY mode: scheduler will not start.")
        yield
    finally:
        await scheduler.stop()
        logger.info("Application shutdown.")


app = FastAPI(
    title="GitHub Activity Sync",
    description="Keeps a local store of an organization's GitHub activity graph in sync",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=config.API_PREFIX)

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
