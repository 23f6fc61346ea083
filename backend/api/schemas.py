# backend/api/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.llm.model_catalog import ModelDescriptor
from backend.session.state import ChatMessage, SessionSnapshot


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SendMessageRequest(_StrictModel):
    content: str = Field(min_length=1)


class SelectModelRequest(_StrictModel):
    model_id: str


class MessageOut(_StrictModel):
    id: str
    role: str
    content: str
    timestamp: datetime

    @classmethod
    def from_message(cls, m: ChatMessage) -> "MessageOut":
        return cls(id=m.id, role=m.role, content=m.content, timestamp=m.timestamp)


class LoadingProgressOut(_StrictModel):
    text: str
    percent: int


class SessionOut(_StrictModel):
    seq: int
    status: str
    mode: Optional[str]
    loading_progress: LoadingProgressOut
    last_error: Optional[str]
    suggested_fallback_model_id: Optional[str]
    cached_engine_model_id: Optional[str]
    selected_model_id: str
    accelerator_info: Optional[str]
    is_busy_loading: bool
    is_generating: bool
    is_interactive: bool
    is_degraded: bool
    messages: List[MessageOut]

    @classmethod
    def from_snapshot(cls, snap: SessionSnapshot) -> "SessionOut":
        return cls(
            seq=snap.seq,
            status=snap.status.value,
            mode=snap.mode.value if snap.mode is not None else None,
            loading_progress=LoadingProgressOut(
                text=snap.loading_progress.text, percent=snap.loading_progress.percent
            ),
            last_error=snap.last_error,
            suggested_fallback_model_id=snap.suggested_fallback_model_id,
            cached_engine_model_id=snap.cached_engine_model_id,
            selected_model_id=snap.selected_model_id,
            accelerator_info=snap.accelerator_info,
            is_busy_loading=snap.is_busy_loading,
            is_generating=snap.is_generating,
            is_interactive=snap.is_interactive,
            is_degraded=snap.is_degraded,
            messages=[MessageOut.from_message(m) for m in snap.messages],
        )


class ModelOut(_StrictModel):
    id: str
    name: str
    mem_req_mb: float
    tier: str
    description: str

    @classmethod
    def from_descriptor(cls, m: ModelDescriptor) -> "ModelOut":
        return cls(id=m.id, name=m.name, mem_req_mb=m.mem_req_mb, tier=m.tier, description=m.description)


class UsageOut(_StrictModel):
    used: int
    total: int
    percent_used: float
    available: bool
    used_label: str
    total_label: str


class CachedModelOut(_StrictModel):
    id: str
    name: str
    filename: str
    size: int
    size_label: str


class CacheOut(_StrictModel):
    cache_size: int
    cache_label: str
    has_cached_model: bool
    available: bool
    models: List[CachedModelOut]


class DashboardOut(_StrictModel):
    storage: UsageOut
    memory: UsageOut
    accelerator_memory: UsageOut
    cache: CacheOut
    engine_loaded: bool


class ClearCacheOut(_StrictModel):
    removed: List[str]
