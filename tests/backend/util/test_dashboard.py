# tests/backend/util/test_dashboard.py
from __future__ import annotations

import pytest

import config as cfg
from backend.llm.model_catalog import get_model_by_id
from backend.session.state import ChatMessage
from backend.util import dashboard as dash
from memory.conversation import MessageStore


@pytest.mark.parametrize(
    "num,expected",
    [
        (0, "0 B"),
        (512, "512.00 B"),
        (1024, "1.00 KB"),
        (1536, "1.50 KB"),
        (1024 ** 2, "1.00 MB"),
        (3 * 1024 ** 3, "3.00 GB"),
        (2 * 1024 ** 5, "2048.00 TB"),
    ],
)
def test_format_bytes(num, expected):
    assert dash.format_bytes(num) == expected


@pytest.mark.asyncio
async def test_storage_info_reports_history_size_against_quota(monkeypatch):
    monkeypatch.setattr(cfg.settings, "history_quota_bytes", 1024 * 1024)
    await MessageStore().save([ChatMessage.new("user", "hello")])

    info = dash.get_storage_info()

    assert info.available
    assert info.quota == 1024 * 1024
    assert info.used > 0
    assert 0 < info.percent_used < 100


def test_storage_info_when_history_disabled(monkeypatch):
    monkeypatch.setattr(cfg.settings, "history_enabled", False)
    info = dash.get_storage_info()
    assert not info.available
    assert info.used == 0


def test_memory_info_uses_system_ram():
    info = dash.get_memory_info()
    assert info.available
    assert 0 < info.used <= info.total
    assert 0 < info.percent_used <= 100


def test_accelerator_memory_unavailable_without_cuda(monkeypatch):
    monkeypatch.setattr(dash, "accelerator_memory_usage", lambda: None)
    assert not dash.get_accelerator_memory_info().available

    monkeypatch.setattr(dash, "accelerator_memory_usage", lambda: (2 * 1024 ** 3, 8 * 1024 ** 3))
    info = dash.get_accelerator_memory_info()
    assert info.available
    assert info.percent_used == pytest.approx(25.0)


def test_cache_info_lists_present_catalog_weights(tmp_path):
    small = get_model_by_id("llama-3.2-1b-instruct-q4")
    other = get_model_by_id("qwen2.5-1.5b-instruct-q4")
    (tmp_path / small.filename).write_bytes(b"x" * 100)
    (tmp_path / other.filename).write_bytes(b"x" * 50)
    (tmp_path / "notes.txt").write_text("not a model")

    info = dash.get_cache_info(str(tmp_path))

    assert info.available
    assert info.has_cached_model
    assert info.model_cache_size == 150
    assert {m.id: m.size for m in info.models} == {small.id: 100, other.id: 50}


def test_cache_info_without_models_dir(tmp_path):
    info = dash.get_cache_info(str(tmp_path / "missing"))
    assert not info.available
    assert not info.has_cached_model
    assert info.models == []


def test_clear_model_cache_removes_only_catalog_weights(tmp_path):
    small = get_model_by_id("llama-3.2-1b-instruct-q4")
    (tmp_path / small.filename).write_bytes(b"GGUF")
    (tmp_path / "notes.txt").write_text("keep me")

    removed = dash.clear_model_cache(str(tmp_path))

    assert removed == [small.id]
    assert not (tmp_path / small.filename).exists()
    assert (tmp_path / "notes.txt").exists()
    assert dash.clear_model_cache(str(tmp_path)) == []
