# tests/config/test_settings.py
from __future__ import annotations

from pathlib import Path

import pytest

from config import DEFAULT_SYSTEM_PROMPT, Settings


def test_settings_env_overrides_generation_and_log_level(tmp_path, monkeypatch):
    monkeypatch.setenv("HEARTH_MAX_TOKENS", "128")
    monkeypatch.setenv("HEARTH_TEMPERATURE", "0.2")
    monkeypatch.setenv("HEARTH_LOG_LEVEL", "debug")
    monkeypatch.setenv("HEARTH_DATA_DIR", str(tmp_path))

    s = Settings()

    assert s.max_tokens == 128
    assert s.temperature == pytest.approx(0.2)
    assert s.log_level == "debug"
    # defaults unaffected
    assert s.context_window_messages == 50
    assert s.system_prompt == DEFAULT_SYSTEM_PROMPT


@pytest.mark.parametrize(
    "value,expected",
    [
        ("DEBUG", "debug"),
        (" Info ", "info"),
        ("warn", "info"),     # invalid => fallback to info
        ("", "info"),         # empty => fallback
    ],
)
def test_log_level_validator(value, expected, monkeypatch):
    monkeypatch.setenv("HEARTH_LOG_LEVEL", value)
    s = Settings()
    assert s.log_level == expected


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("", None),
        ("auto", None),
        ("true", True),
        ("1", True),
        ("false", False),
        ("off", False),
    ],
)
def test_low_resource_mode_validator(value, expected, monkeypatch):
    if value is None:
        monkeypatch.delenv("HEARTH_LOW_RESOURCE_MODE", raising=False)
    else:
        monkeypatch.setenv("HEARTH_LOW_RESOURCE_MODE", value)

    s = Settings()
    assert s.low_resource_mode is expected


def test_db_path_creates_directory(tmp_path, monkeypatch):
    data_dir = tmp_path / "mydata"
    monkeypatch.setenv("HEARTH_DATA_DIR", str(data_dir))
    monkeypatch.setenv("HEARTH_DB_FILENAME", "hearth.sqlite3")

    s = Settings()
    path = Path(s.db_path)

    assert path.name == "hearth.sqlite3"
    assert path.parent == data_dir.resolve()
    # Directory should exist as a side-effect of accessing db_path
    assert path.parent.is_dir()
