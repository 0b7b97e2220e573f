"""Main FastAPI application."""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from callbot.core.dependencies import get_session_registry
from callbot.core.logging import setup_logging
from callbot.db.database import init_db
from callbot.api import calls, health, media_stream, sessions
from callbot.api.webhooks import voice


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    yield
    # Shutdown
    await get_session_registry().shutdown(reason="shutdown", timeout=30)


app = FastAPI(
    title="Callbot",
    description="Real-time voice call agent",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(voice.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(media_stream.router, tags=["media"])
app.include_router(sessions.router, tags=["sessions"])
app.include_router(calls.router, tags=["calls"])


@app.get("/")
async def root():
    return {
        "message": "Callbot API",
        "version": "0.1.0",
    }
