"""
SkySuite feed generator - FastAPI backend
Serves feed skeletons, service discovery and health probes.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import settings
from database import engine, Base
import models  # noqa: F401
from routers import health, feedgen


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting SkySuite feed generator...")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    print(f"📡 Serving feeds for {settings.FEEDGEN_HOSTNAME}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down feed generator...")


app = FastAPI(
    title="SkySuite Feed Generator",
    description="Keyword and opt-in feeds served from the indexed post store",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(feedgen.router, tags=["Feed Generator"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "SkySuite Feed Generator",
        "version": settings.APP_VERSION,
        "status": "running"
    }
