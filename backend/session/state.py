# backend/session/state.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Tuple

Role = Literal["user", "assistant", "system"]


class SessionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    DEGRADED = "degraded"
    ERROR = "error"


class EngineMode(str, Enum):
    ACCELERATED = "accelerated"
    DEGRADED = "degraded"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    id: str
    role: Role
    content: str
    timestamp: datetime

    @classmethod
    def new(cls, role: Role, content: str = "") -> "ChatMessage":
        return cls(id=uuid.uuid4().hex, role=role, content=content, timestamp=utcnow())

    def copy(self) -> "ChatMessage":
        return replace(self)


@dataclass(frozen=True)
class LoadingProgress:
    text: str = ""
    percent: int = 0


@dataclass(frozen=True)
class SessionSnapshot:
    seq: int
    status: SessionStatus
    mode: Optional[EngineMode]
    loading_progress: LoadingProgress
    last_error: Optional[str]
    suggested_fallback_model_id: Optional[str]
    cached_engine_model_id: Optional[str]
    selected_model_id: str
    accelerator_info: Optional[str]
    messages: Tuple[ChatMessage, ...] = field(default_factory=tuple)

    @property
    def is_busy_loading(self) -> bool:
        return self.status is SessionStatus.LOADING

    @property
    def is_generating(self) -> bool:
        return self.status is SessionStatus.GENERATING

    @property
    def is_interactive(self) -> bool:
        return self.status in (SessionStatus.READY, SessionStatus.DEGRADED, SessionStatus.GENERATING)

    @property
    def is_degraded(self) -> bool:
        return self.mode is EngineMode.DEGRADED
