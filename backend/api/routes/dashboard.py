# backend/api/routes/dashboard.py
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from backend.api.routes.session import get_session
from backend.api.schemas import CachedModelOut, CacheOut, ClearCacheOut, DashboardOut, UsageOut
from backend.session.controller import SessionController
from backend.util import dashboard as dash

log = logging.getLogger("hearth.routes.dashboard")
router = APIRouter(prefix="/dashboard", tags=["dashboard"])


def _usage(used: int, total: int, percent_used: float, available: bool) -> UsageOut:
    return UsageOut(
        used=used,
        total=total,
        percent_used=round(percent_used, 1),
        available=available,
        used_label=dash.format_bytes(used),
        total_label=dash.format_bytes(total),
    )


@router.get("", response_model=DashboardOut)
async def get_dashboard(session: SessionController = Depends(get_session)) -> DashboardOut:
    storage, memory, vram, cache = await asyncio.gather(
        asyncio.to_thread(dash.get_storage_info),
        asyncio.to_thread(dash.get_memory_info),
        asyncio.to_thread(dash.get_accelerator_memory_info),
        asyncio.to_thread(dash.get_cache_info),
    )
    return DashboardOut(
        storage=_usage(storage.used, storage.quota, storage.percent_used, storage.available),
        memory=_usage(memory.used, memory.total, memory.percent_used, memory.available),
        accelerator_memory=_usage(vram.used, vram.total, vram.percent_used, vram.available),
        cache=CacheOut(
            cache_size=cache.model_cache_size,
            cache_label=dash.format_bytes(cache.model_cache_size),
            has_cached_model=cache.has_cached_model,
            available=cache.available,
            models=[
                CachedModelOut(
                    id=m.id, name=m.name, filename=m.filename, size=m.size, size_label=dash.format_bytes(m.size)
                )
                for m in cache.models
            ],
        ),
        engine_loaded=session.has_engine,
    )


@router.delete("/model-cache", response_model=ClearCacheOut)
async def clear_model_cache(session: SessionController = Depends(get_session)) -> ClearCacheOut:
    """Delete local model weights. Refused while a model is loaded or loading."""
    if session.has_engine or session.is_busy_loading:
        raise HTTPException(status_code=409, detail="unload the model (reset the session) before clearing the cache")
    try:
        removed = await asyncio.to_thread(dash.clear_model_cache)
    except OSError as e:
        log.exception("Clearing the model cache failed: %s", e)
        raise HTTPException(status_code=500, detail=f"failed to clear model cache: {e}")
    return ClearCacheOut(removed=removed)
