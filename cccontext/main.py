"""cccontext FastAPI app: live session monitor entry point.

Serve with: uvicorn cccontext.main:app --port 8765
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cccontext import config
from cccontext.config import MonitorSettings
from cccontext.monitor.service import LiveSessionMonitor
from cccontext.observability import initialize as initialize_observability, shutdown as shutdown_observability
from cccontext.routers.live import live_router

logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)
logger = logging.getLogger("cccontext")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("cccontext starting up")
    initialize_observability(app)

    monitor = LiveSessionMonitor(MonitorSettings.from_env())
    app.state.monitor = monitor
    await monitor.start()

    yield

    logger.info("cccontext shutting down")
    await monitor.stop()
    app.state.monitor = None
    shutdown_observability(app)


app = FastAPI(
    title="cccontext API",
    description="Live context usage for Claude Code sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(live_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    monitor = getattr(app.state, "monitor", None)
    return {
        "status": "ok",
        "monitor": "running" if monitor is not None and monitor.is_running else "stopped",
        "projectsDir": str(config.PROJECTS_DIR),
    }

