"""FastAPI application entry point."""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bedtime.config import settings
from bedtime.routes import realtime, requests
from bedtime.services.change_feed import ChangeFeed
from bedtime.services.functions_client import FunctionsClient
from bedtime.services.store import RequestStore
from bedtime.tracker import TrackerRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Bedtime",
    description="Story request tracking for the bedtime story app",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(requests.router)
app.include_router(realtime.router)


def run_migrations():
    """Create tables with Alembic unless they already exist."""
    from bedtime.database import tables_exist, wait_for_database

    wait_for_database()

    if tables_exist():
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
async def startup_event():
    """Prepare the database and the per-user tracker registry."""
    logger.info("Starting application...")

    try:
        run_migrations()
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")

    from bedtime.database import SessionLocal

    feed = ChangeFeed()
    store = RequestStore(SessionLocal, feed=feed)
    functions = FunctionsClient()

    app.state.feed = feed
    app.state.store = store
    app.state.functions = functions
    app.state.registry = TrackerRegistry(store, functions, feed=feed)
    logger.info("Tracker registry ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop all running trackers."""
    logger.info("Shutting down application...")
    registry = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.close_all()
        logger.info("Trackers stopped")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "Bedtime",
        "version": "0.1.0",
        "status": "running",
    }
