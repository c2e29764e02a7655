from contextlib import asynccontextmanager
from fastapi import FastAPI

from healthsync.core.database import init_db
from healthsync.api import health, sync


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    yield


# Create FastAPI application
app = FastAPI(
    title="Health Tracker Sync Server",
    description="Authoritative store and sync endpoints for offline-first health tracking clients",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)
