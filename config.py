# config.py
"""
Global configuration for Hearth.

Usage (preferred):
    import config as cfg
    s = cfg.settings
    print(s.default_model_id)

Override via env vars (prefix HEARTH_, case-insensitive), e.g.:
  HEARTH_LOG_LEVEL=debug
  HEARTH_SERVER_PORT=8000
  HEARTH_MODELS_DIR=./models
  HEARTH_DEFAULT_MODEL_ID=llama-3.2-1b-instruct-q4
  HEARTH_FORCE_DEMO_MODE=true
  HEARTH_LOW_RESOURCE_MODE=auto

  # persistence
  HEARTH_DATA_DIR=./data
  HEARTH_DB_FILENAME=hearth.sqlite3
  HEARTH_STORE_TIMEOUT_SEC=5
"""
from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["debug", "info", "warning", "error", "critical"]

DEFAULT_SYSTEM_PROMPT = (
    "You are Hearth, a helpful assistant running entirely on the user's own machine. "
    "Be concise and helpful."
)


class Settings(BaseSettings):
    # Logging
    log_level: LogLevel = "info"

    # ---- Server ----
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    uvicorn_access_log: bool = False

    # ---- Local LLM (llama.cpp) ----
    models_dir: str = "models"
    default_model_id: str = "llama-3.2-1b-instruct-q4"
    n_ctx: int = 4096
    n_gpu_layers: int = -1  # -1 -> offload every layer when an accelerator is present
    n_threads: Optional[int] = None

    # ---- Generation ----
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = 512
    temperature: float = 0.7
    context_window_messages: int = 50

    # ---- Demo (degraded) mode ----
    demo_char_delay_ms: int = 15
    force_demo_mode: bool = False

    # ---- Device class ----
    # None -> decide from detected RAM; True/False pins it
    low_resource_mode: Optional[bool] = None
    low_resource_model_limit: int = 3
    low_resource_ram_gb: float = 4.0

    # ---- Persistent history ----
    history_enabled: bool = True
    data_dir: str = "data"
    db_filename: str = "hearth.sqlite3"
    db_wal: bool = True
    store_timeout_sec: float = 5.0
    store_max_pending: int = 64
    history_quota_bytes: int = 50 * 1024 * 1024

    model_config = SettingsConfigDict(
        env_prefix="HEARTH_",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def db_path(self) -> str:
        # Resolve to absolute path and ensure folder exists when accessed
        path = os.path.abspath(os.path.join(self.data_dir, self.db_filename))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        return path

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, v: str) -> LogLevel:
        vv = str(v).lower().strip()
        return vv if vv in {"debug", "info", "warning", "error", "critical"} else "info"  # type: ignore[return-value]

    @field_validator("low_resource_mode", mode="before")
    @classmethod
    def _validate_low_resource(cls, v: object) -> Optional[bool]:
        """
        Accept None / "" / "auto" -> None (auto-detect), else a boolean.
        """
        if v is None or isinstance(v, bool):
            return v
        vv = str(v).strip().lower()
        if vv in {"", "none", "auto"}:
            return None
        return vv in {"1", "true", "yes", "on"}


# Single global instance
settings = Settings()
