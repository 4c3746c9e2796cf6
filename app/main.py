from contextlib import asynccontextmanager
from fastapi import FastAPI

from app.core.database import init_db
from app.api import connection, sync
from app.services.scheduler import start_scheduler, stop_scheduler

# Register models on Base before init_db creates tables
from app import models  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    start_scheduler()
    yield
    # Shutdown
    stop_scheduler()


# Create FastAPI application
app = FastAPI(
    title="Google Review Sync",
    description="Synchronizes Google Business Profile reviews and tracks connection health",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(connection.router)
app.include_router(sync.router)


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}
