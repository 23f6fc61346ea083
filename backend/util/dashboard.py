# backend/util/dashboard.py
"""
Usage figures for the dashboard: chat history size against its quota, RAM and
VRAM usage, and which catalog weights are present in the models directory.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import psutil

import config as cfg
from backend.llm.model_catalog import CATALOG, ModelDescriptor
from backend.llm.runtime_llama_cpp import resolve_model_path
from backend.util.hw_detect import accelerator_memory_usage

log = logging.getLogger("hearth.dashboard")

# sqlite keeps uncommitted pages in these sidecar files while WAL is on
_DB_SIDECARS = ("", "-wal", "-shm", "-journal")

_UNITS = ("B", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class StorageInfo:
    used: int
    quota: int
    percent_used: float
    available: bool


@dataclass(frozen=True)
class MemoryInfo:
    used: int
    total: int
    percent_used: float
    available: bool


@dataclass(frozen=True)
class CachedModel:
    id: str
    name: str
    filename: str
    size: int


@dataclass(frozen=True)
class CacheInfo:
    model_cache_size: int
    has_cached_model: bool
    available: bool
    models: List[CachedModel] = field(default_factory=list)


def _percent(used: int, total: int) -> float:
    return (used / total) * 100 if total > 0 else 0.0


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    value, i = float(num_bytes), 0
    while value >= 1024 and i < len(_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f} {_UNITS[i]}"


def get_storage_info() -> StorageInfo:
    s = cfg.settings
    quota = int(s.history_quota_bytes)
    if not s.history_enabled:
        return StorageInfo(used=0, quota=quota, percent_used=0.0, available=False)
    try:
        base = s.db_path
    except OSError as e:
        log.warning("History storage unavailable: %s", e)
        return StorageInfo(used=0, quota=quota, percent_used=0.0, available=False)

    used = 0
    for suffix in _DB_SIDECARS:
        path = base + suffix
        if os.path.isfile(path):
            used += os.path.getsize(path)
    return StorageInfo(used=used, quota=quota, percent_used=_percent(used, quota), available=True)


def get_memory_info() -> MemoryInfo:
    try:
        vm = psutil.virtual_memory()
    except Exception as e:
        log.warning("RAM usage query failed: %s", e)
        return MemoryInfo(used=0, total=0, percent_used=0.0, available=False)
    used = int(vm.total - vm.available)
    return MemoryInfo(used=used, total=int(vm.total), percent_used=_percent(used, int(vm.total)), available=True)


def get_accelerator_memory_info() -> MemoryInfo:
    usage = accelerator_memory_usage()
    if usage is None:
        return MemoryInfo(used=0, total=0, percent_used=0.0, available=False)
    used, total = usage
    return MemoryInfo(used=used, total=total, percent_used=_percent(used, total), available=True)


def get_cache_info(
    models_dir: Optional[str] = None, catalog: Sequence[ModelDescriptor] = CATALOG
) -> CacheInfo:
    root = models_dir or cfg.settings.models_dir
    if not os.path.isdir(root):
        return CacheInfo(model_cache_size=0, has_cached_model=False, available=False)

    cached: List[CachedModel] = []
    for spec in catalog:
        path = resolve_model_path(spec, root)
        if os.path.isfile(path):
            cached.append(CachedModel(id=spec.id, name=spec.name, filename=spec.filename, size=os.path.getsize(path)))
    return CacheInfo(
        model_cache_size=sum(m.size for m in cached),
        has_cached_model=bool(cached),
        available=True,
        models=cached,
    )


def clear_model_cache(
    models_dir: Optional[str] = None, catalog: Sequence[ModelDescriptor] = CATALOG
) -> List[str]:
    """
    Delete the catalog weight files found in the models directory and return
    the ids removed. Other files in the directory are left alone. Raises OSError.
    """
    root = models_dir or cfg.settings.models_dir
    removed: List[str] = []
    for spec in catalog:
        path = resolve_model_path(spec, root)
        if os.path.isfile(path):
            os.remove(path)
            removed.append(spec.id)
            log.info("🗑️ Removed cached weights | model=%s path=%s", spec.id, path)
    return removed
