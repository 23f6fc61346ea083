# backend/llm/runtime_llama_cpp.py
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, TYPE_CHECKING

import psutil

import config as cfg
from backend.core.ports import ProgressCallback
from backend.llm.model_catalog import ModelDescriptor, get_model_by_id
from backend.session.errors import EngineConstructionError, FaultKind
from backend.util.hw_detect import detect_hardware

if TYPE_CHECKING:
    from llama_cpp import Llama  # type: ignore

log = logging.getLogger("hearth.llmrt")

_CHAT_FORMAT_BY_PREFIX: Dict[str, str] = {
    "llama-3": "llama-3",
    "qwen": "chatml",
    "smollm": "chatml",
    "phi-3": "chatml",
}

_DONE = object()


def _infer_chat_format(spec: ModelDescriptor) -> Optional[str]:
    for prefix, fmt in _CHAT_FORMAT_BY_PREFIX.items():
        if spec.id.startswith(prefix):
            return fmt
    # Let llama.cpp read the template embedded in the GGUF metadata
    return None


def resolve_model_path(spec: ModelDescriptor, models_dir: Optional[str] = None) -> str:
    return os.path.abspath(os.path.join(models_dir or cfg.settings.models_dir, spec.filename))


def _memory_budget_mb(offload: bool) -> float:
    if offload:
        profile = detect_hardware()
        if profile.vram_gb:
            return profile.vram_gb * 1024
    return psutil.virtual_memory().available / (1024 ** 2)


class LlamaEngineHandle:
    """A loaded llama.cpp model bound to one catalog entry."""

    def __init__(self, llm: "Llama", model_id: str) -> None:
        self._llm: Optional["Llama"] = llm
        self.model_id = model_id

    async def stream_completion(
        self, messages: List[Dict[str, str]], max_tokens: int, temperature: float
    ) -> AsyncIterator[str]:
        llm = self._llm
        if llm is None:
            raise RuntimeError("Engine has been unloaded")

        stream = await asyncio.to_thread(
            llm.create_chat_completion,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        chunks = iter(stream)
        while True:
            # Each token pull blocks on llama.cpp; keep the event loop free
            chunk: Any = await asyncio.to_thread(next, chunks, _DONE)
            if chunk is _DONE:
                break
            choices = chunk.get("choices") or [{}]
            delta = (choices[0].get("delta") or {}).get("content") or ""
            if delta:
                yield delta

    def unload(self) -> None:
        llm, self._llm = self._llm, None
        if llm is None:
            return
        close = getattr(llm, "close", None)
        if callable(close):
            close()
        log.info("Unloaded local LLM | model=%s", self.model_id)


class LlamaEngineFactory:
    def __init__(self, models_dir: Optional[str] = None) -> None:
        self._models_dir = models_dir

    async def construct(self, model_id: str, on_progress: ProgressCallback) -> LlamaEngineHandle:
        s = cfg.settings
        spec = get_model_by_id(model_id)
        if spec is None:
            raise EngineConstructionError(f"Unknown model id: {model_id}", kind=FaultKind.UNCLASSIFIED)

        on_progress(0.0, f"Locating {spec.name} weights...")
        model_path = resolve_model_path(spec, self._models_dir)
        if not os.path.isfile(model_path):
            raise EngineConstructionError(
                f"Model file not found in local cache: {model_path}", kind=FaultKind.STORAGE_ACCESS
            )

        try:
            from llama_cpp import Llama  # type: ignore
        except ImportError as e:
            raise EngineConstructionError(
                "llama-cpp-python is not installed; local LLM disabled.", kind=FaultKind.UNCLASSIFIED
            ) from e

        offload = s.n_gpu_layers != 0
        budget_mb = _memory_budget_mb(offload)
        if budget_mb < spec.mem_req_mb:
            raise EngineConstructionError(
                f"Not enough memory for {spec.name}: needs {spec.mem_req_mb:.0f} MB, "
                f"{budget_mb:.0f} MB available",
                kind=FaultKind.RESOURCE_EXHAUSTION,
            )

        chat_format = _infer_chat_format(spec)
        on_progress(0.2, f"Loading {spec.name}...")
        log.info(
            "🧠 Loading local LLM | path=%s chat_format=%s n_ctx=%d n_threads=%s n_gpu_layers=%d",
            model_path,
            chat_format or "gguf",
            s.n_ctx,
            str(s.n_threads) if s.n_threads is not None else "auto",
            s.n_gpu_layers,
        )

        llm = await asyncio.to_thread(
            Llama,
            model_path=model_path,
            n_ctx=s.n_ctx,
            n_threads=s.n_threads,
            n_gpu_layers=s.n_gpu_layers,
            chat_format=chat_format,
            verbose=False,
        )
        on_progress(1.0, f"{spec.name} loaded")
        return LlamaEngineHandle(llm, model_id)
