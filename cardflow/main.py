"""FastAPI application entry point."""

import logging
import os

import sqlalchemy
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cardflow.routes import projects, runs

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Cardflow",
    description="Batch generation of use-case cards, user stories and subtasks",
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
app.include_router(projects.router)
app.include_router(runs.router)


def run_migrations():
    """Upgrade the database to the latest revision unless tables already exist."""
    from alembic import command
    from alembic.config import Config

    from cardflow.database import engine

    # work_items is the last table created in the initial migration
    if sqlalchemy.inspect(engine).has_table("work_items"):
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
def startup_event():
    logger.info("Starting application...")
    try:
        run_migrations()
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    return {
        "name": "Cardflow",
        "version": "0.1.0",
        "status": "running",
    }
