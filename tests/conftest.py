# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

# --- FORCE PROJECT ROOT ONTO sys.path ----------------------------------------

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Session-wide env defaults; must be set before config.settings is built on first import.
_TMP_ROOT = tempfile.mkdtemp(prefix="hearth_test_")
os.environ.setdefault("HEARTH_DATA_DIR", os.path.join(_TMP_ROOT, "data"))
os.environ.setdefault("HEARTH_DB_FILENAME", "hearth_test.sqlite3")
os.environ.setdefault("HEARTH_DB_WAL", "false")
os.environ.setdefault("HEARTH_MODELS_DIR", os.path.join(_TMP_ROOT, "models"))
os.environ.setdefault("HEARTH_DEMO_CHAR_DELAY_MS", "0")
os.environ.setdefault("HEARTH_LOW_RESOURCE_MODE", "false")

# -----------------------------------------------------------------------------

from backend.util.hw_detect import AcceleratorProbe  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_history_db(tmp_path, monkeypatch):
    """Each test writes history to its own sqlite file."""
    import config as cfg

    monkeypatch.setattr(cfg.settings, "data_dir", str(tmp_path / "data"))
    monkeypatch.setattr(cfg.settings, "db_filename", "history.sqlite3")
    monkeypatch.setattr(cfg.settings, "history_enabled", True)
    yield


# ---------- Fakes shared by controller / API tests ----------

class FakeProber:
    def __init__(
        self,
        accelerated: bool = True,
        optional_feature: bool = True,
        non_interactive: bool = False,
        error_reason: Optional[str] = None,
    ) -> None:
        self.result = AcceleratorProbe(
            accelerated=accelerated,
            optional_feature_supported=optional_feature,
            vendor_info="Fake GPU" if accelerated else None,
            error_reason=error_reason,
        )
        self.non_interactive = non_interactive
        self.probe_calls = 0

    def probe(self) -> AcceleratorProbe:
        self.probe_calls += 1
        return self.result

    def is_non_interactive_environment(self) -> bool:
        return self.non_interactive


class FakeEngine:
    """Streams scripted deltas; records the calls it receives."""

    def __init__(self, model_id: str, deltas: Optional[List[str]] = None, fail_with: Optional[Exception] = None):
        self.model_id = model_id
        self.deltas = list(deltas if deltas is not None else ["Hel", "lo", "!"])
        self.fail_with = fail_with
        self.calls: List[Dict[str, Any]] = []
        self.unload_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.streaming = False
        self.unloaded_while_streaming = False

    async def stream_completion(self, messages, max_tokens, temperature) -> AsyncIterator[str]:
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "temperature": temperature})
        self.streaming = True
        try:
            for d in self.deltas:
                if self.gate is not None:
                    await self.gate.wait()
                await asyncio.sleep(0)
                yield d
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.streaming = False

    def unload(self) -> None:
        if self.streaming:
            self.unloaded_while_streaming = True
        self.unload_calls += 1


class FakeEngineFactory:
    def __init__(self, fail_with: Optional[Exception] = None, progress: Optional[List[float]] = None):
        self.fail_with = fail_with
        self.progress = progress if progress is not None else [0.0, 0.5, 1.0]
        self.calls: List[str] = []
        self.built: List[FakeEngine] = []
        self.gate: Optional[asyncio.Event] = None
        self.deltas: Optional[List[str]] = None
        self.stream_fail_with: Optional[Exception] = None
        self.active = 0
        self.max_active = 0

    async def construct(self, model_id, on_progress):
        self.calls.append(model_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for p in self.progress:
                on_progress(p, f"step {p}")
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            self.active -= 1
        engine = FakeEngine(model_id, deltas=self.deltas, fail_with=self.stream_fail_with)
        self.built.append(engine)
        return engine


@pytest.fixture
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def fake_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def make_prober():
    return FakeProber


@pytest.fixture
def make_factory():
    return FakeEngineFactory


@pytest.fixture
def make_engine():
    return FakeEngine
