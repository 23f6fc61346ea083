# tests/backend/api/test_dashboard_routes.py
from __future__ import annotations

import pytest
from fastapi import HTTPException

import config as cfg
from backend.api.routes import dashboard as routes
from backend.llm.model_catalog import get_model_by_id
from backend.session.controller import SessionController
from backend.util import dashboard as dash


@pytest.fixture
def models_dir(tmp_path, monkeypatch):
    path = tmp_path / "models"
    path.mkdir()
    monkeypatch.setattr(cfg.settings, "models_dir", str(path))
    return path


def _session(prober, factory):
    return SessionController(prober=prober, engine_factory=factory, low_resource=False)


@pytest.mark.asyncio
async def test_dashboard_reports_usage_and_cached_weights(make_prober, make_factory, models_dir, monkeypatch):
    spec = get_model_by_id("llama-3.2-1b-instruct-q4")
    (models_dir / spec.filename).write_bytes(b"x" * 2048)
    monkeypatch.setattr(dash, "accelerator_memory_usage", lambda: None)

    out = await routes.get_dashboard(session=_session(make_prober(), make_factory()))

    assert out.cache.available
    assert out.cache.cache_size == 2048
    assert out.cache.cache_label == "2.00 KB"
    assert [m.id for m in out.cache.models] == [spec.id]
    assert out.storage.total == cfg.settings.history_quota_bytes
    assert out.memory.available
    assert not out.accelerator_memory.available
    assert out.engine_loaded is False


@pytest.mark.asyncio
async def test_clear_model_cache_removes_weights(make_prober, make_factory, models_dir):
    spec = get_model_by_id("llama-3.2-1b-instruct-q4")
    (models_dir / spec.filename).write_bytes(b"GGUF")

    out = await routes.clear_model_cache(session=_session(make_prober(), make_factory()))

    assert out.removed == [spec.id]
    assert not (models_dir / spec.filename).exists()


@pytest.mark.asyncio
async def test_clear_model_cache_refused_while_engine_loaded(make_prober, make_factory, models_dir):
    spec = get_model_by_id("llama-3.2-1b-instruct-q4")
    (models_dir / spec.filename).write_bytes(b"GGUF")
    session = _session(make_prober(), make_factory())
    await session.initialize()

    with pytest.raises(HTTPException) as ei:
        await routes.clear_model_cache(session=session)

    assert ei.value.status_code == 409
    assert (models_dir / spec.filename).exists()

    await session.reset()
    out = await routes.clear_model_cache(session=session)
    assert out.removed == [spec.id]
