# backend/session/errors.py
"""
Session-level exceptions and classification of engine construction failures.

Engines rarely report structured error codes, so classification prefers an
explicit ``FaultKind`` carried on ``EngineConstructionError`` and falls back to
keyword matching on the failure text. The keyword lists follow the wording of
llama.cpp / CUDA / Metal errors and are inherently heuristic.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple


class HearthError(Exception):
    """Base for all errors raised by this package."""


class SessionNotReadyError(HearthError):
    """send_message() called while the session is neither ready nor degraded."""


class FaultKind(str, Enum):
    STORAGE_ACCESS = "storage_access"
    ACCELERATOR = "accelerator"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    UNCLASSIFIED = "unclassified"


class EngineConstructionError(HearthError):
    def __init__(self, message: str, kind: Optional[FaultKind] = None) -> None:
        super().__init__(message)
        self.kind = kind


# Checked in this order: "failed to allocate KV cache" is a memory problem, not a cache one.
_KEYWORDS: Tuple[Tuple[FaultKind, Tuple[str, ...]], ...] = (
    (FaultKind.RESOURCE_EXHAUSTION, ("out of memory", "memory", "oom", "alloc")),
    (
        FaultKind.STORAGE_ACCESS,
        ("network", "fetch", "cache", "disk", "no space", "storage", "quota", "not found"),
    ),
    (
        FaultKind.ACCELERATOR,
        ("gpu", "webgpu", "adapter", "cuda", "metal", "vulkan", "accelerator"),
    ),
)


def classify_fault(exc: BaseException) -> FaultKind:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, FaultKind):
        return kind
    if isinstance(exc, MemoryError):
        return FaultKind.RESOURCE_EXHAUSTION
    return classify_fault_text(str(exc))


def classify_fault_text(text: str) -> FaultKind:
    lower = (text or "").lower()
    for kind, words in _KEYWORDS:
        if any(w in lower for w in words):
            return kind
    return FaultKind.UNCLASSIFIED


def storage_fault_message(detail: str) -> str:
    return (
        f"Failed to load the model files: {detail}. "
        "Free up disk space, clear the model cache, or try running on another machine."
    )
