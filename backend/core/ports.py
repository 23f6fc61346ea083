# backend/core/ports.py
from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, List, Protocol, runtime_checkable

from backend.util.hw_detect import AcceleratorProbe

ProgressCallback = Callable[[float, str], None]


class CapabilityProber(Protocol):
    def probe(self) -> AcceleratorProbe: ...

    def is_non_interactive_environment(self) -> bool: ...


class EngineHandle(Protocol):
    def stream_completion(
        self, messages: List[Dict[str, str]], max_tokens: int, temperature: float
    ) -> AsyncIterator[str]: ...


# Optional shutdown facets; a handle may expose either, both or neither.
@runtime_checkable
class Unloadable(Protocol):
    def unload(self) -> Any: ...


@runtime_checkable
class HardDisposable(Protocol):
    def dispose(self) -> Any: ...


class EngineFactory(Protocol):
    async def construct(self, model_id: str, on_progress: ProgressCallback) -> EngineHandle: ...
