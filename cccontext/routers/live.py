"""Live session API consumed by the dashboard."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from cccontext.monitor.lifecycle import SessionCapacityError
from cccontext.monitor.service import LiveSessionMonitor

logger = logging.getLogger("cccontext.live")

live_router = APIRouter(prefix="/api/live", tags=["live"])


def _get_monitor(request: Request) -> LiveSessionMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if not monitor:
        raise HTTPException(status_code=503, detail="Session monitor not initialized")
    return monitor


@live_router.get("/sessions")
async def list_sessions(request: Request, limit: int = Query(20, ge=1, le=500)):
    monitor = _get_monitor(request)
    sessions = await monitor.get_all_sessions(limit=limit)
    return {"status": "ok", "count": len(sessions), "items": sessions}


@live_router.get("/sessions/active")
async def get_active_session(request: Request):
    monitor = _get_monitor(request)
    try:
        snapshot = await monitor.get_active_session()
    except SessionCapacityError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No active session found")
    return snapshot


@live_router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    monitor = _get_monitor(request)
    snapshot = await monitor.get_session(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return snapshot


@live_router.get("/stats")
async def get_stats(request: Request):
    monitor = _get_monitor(request)
    return {"status": "ok", **monitor.stats()}


@live_router.post("/cache/clear")
async def clear_cache(request: Request):
    monitor = _get_monitor(request)
    cleared = len(monitor.cache)
    monitor.clear_cache()
    logger.info(f"Cleared {cleared} cached session(s) via API")
    return {"status": "ok", "cleared": cleared}
