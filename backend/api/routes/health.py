# backend/api/routes/health.py
from __future__ import annotations

import logging
from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])
log = logging.getLogger("hearth.routes.health")


@router.get("/healthz")
async def healthz(request: Request) -> dict:
    """
    Lightweight liveness/readiness probe.
    Reports process-level 'ok' plus the session status and whether a model is loaded.
    """
    session = getattr(request.app.state, "session", None)
    if session is None:
        return {"status": "ok", "session": None, "engine_loaded": False}
    return {
        "status": "ok",
        "session": session.status.value,
        "engine_loaded": session.has_engine,
    }
