# backend/llm/model_catalog.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence

import config as cfg
from backend.util.hw_detect import HardwareProfile, detect_hardware

Tier = Literal["wide", "narrow"]


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    filename: str
    mem_req_mb: float
    tier: Tier
    description: str = ""


# Ordering is load-bearing: wide-tier entries first, then narrow-tier, each group
# non-decreasing by mem_req_mb. Fallback queries are plain index arithmetic.
#   wide   -> 4-bit quantized GGUF, runs on any llama.cpp backend (CPU included)
#   narrow -> fp16 GGUF, needs an accelerator with fast half precision
CATALOG: List[ModelDescriptor] = [
    ModelDescriptor(
        id="llama-3.2-1b-instruct-q4",
        name="Llama 3.2 1B (Q4)",
        filename="Llama-3.2-1B-Instruct-Q4_K_M.gguf",
        mem_req_mb=1130,
        tier="wide",
        description="Modern small model from Meta",
    ),
    ModelDescriptor(
        id="qwen2.5-1.5b-instruct-q4",
        name="Qwen 2.5 1.5B (Q4)",
        filename="qwen2.5-1.5b-instruct-q4_k_m.gguf",
        mem_req_mb=1630,
        tier="wide",
        description="High quality small model",
    ),
    ModelDescriptor(
        id="llama-3.2-3b-instruct-q4",
        name="Llama 3.2 3B (Q4)",
        filename="Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        mem_req_mb=2950,
        tier="wide",
        description="Medium model with better reasoning",
    ),
    ModelDescriptor(
        id="phi-3.5-mini-instruct-q4",
        name="Phi 3.5 Mini (Q4)",
        filename="Phi-3.5-mini-instruct-Q4_K_M.gguf",
        mem_req_mb=3200,
        tier="wide",
        description="High-quality medium model from Microsoft",
    ),
    ModelDescriptor(
        id="llama-3.1-8b-instruct-q4",
        name="Llama 3.1 8B (Q4)",
        filename="Meta-Llama-3.1-8B-Instruct-Q4_K_M.gguf",
        mem_req_mb=6100,
        tier="wide",
        description="Large model with excellent quality",
    ),
    ModelDescriptor(
        id="smollm2-360m-instruct-f16",
        name="SmolLM2 360M (F16)",
        filename="SmolLM2-360M-Instruct-f16.gguf",
        mem_req_mb=780,
        tier="narrow",
        description="Smallest model, fastest responses",
    ),
    ModelDescriptor(
        id="qwen2.5-0.5b-instruct-f16",
        name="Qwen 2.5 0.5B (F16)",
        filename="qwen2.5-0.5b-instruct-fp16.gguf",
        mem_req_mb=1280,
        tier="narrow",
        description="Tiny model at full half precision",
    ),
    ModelDescriptor(
        id="llama-3.2-1b-instruct-f16",
        name="Llama 3.2 1B (F16)",
        filename="Llama-3.2-1B-Instruct-f16.gguf",
        mem_req_mb=2700,
        tier="narrow",
        description="Small Meta model without quantization loss",
    ),
    ModelDescriptor(
        id="qwen2.5-1.5b-instruct-f16",
        name="Qwen 2.5 1.5B (F16)",
        filename="qwen2.5-1.5b-instruct-fp16.gguf",
        mem_req_mb=3560,
        tier="narrow",
        description="Small Qwen model without quantization loss",
    ),
    ModelDescriptor(
        id="llama-3.2-3b-instruct-f16",
        name="Llama 3.2 3B (F16)",
        filename="Llama-3.2-3B-Instruct-f16.gguf",
        mem_req_mb=6900,
        tier="narrow",
        description="Medium model for capable GPUs",
    ),
]


def validate_catalog_order(catalog: Sequence[ModelDescriptor]) -> None:
    """Raise ValueError unless tiers are grouped (wide first) and memory is non-decreasing per tier."""
    seen_narrow = False
    prev: Optional[ModelDescriptor] = None
    for m in catalog:
        if m.tier == "narrow":
            if not seen_narrow:
                prev = None
            seen_narrow = True
        elif seen_narrow:
            raise ValueError(f"Wide-tier model {m.id} listed after narrow-tier models")
        if prev is not None and m.mem_req_mb < prev.mem_req_mb:
            raise ValueError(f"Catalog not sorted by memory: {prev.id} > {m.id}")
        prev = m


validate_catalog_order(CATALOG)


def get_available_models(
    optional_feature_supported: bool,
    low_resource: bool = False,
    catalog: Sequence[ModelDescriptor] = CATALOG,
) -> List[ModelDescriptor]:
    if optional_feature_supported:
        models = list(catalog)
    else:
        models = [m for m in catalog if m.tier == "wide"]

    # Constrained devices only get the N smallest entries
    if low_resource:
        models = models[: max(1, cfg.settings.low_resource_model_limit)]
    return models


def get_model_by_id(model_id: str, catalog: Sequence[ModelDescriptor] = CATALOG) -> Optional[ModelDescriptor]:
    for m in catalog:
        if m.id == model_id:
            return m
    return None


def next_smaller_model(
    model_id: str,
    optional_feature_supported: bool = True,
    low_resource: bool = False,
    catalog: Sequence[ModelDescriptor] = CATALOG,
) -> Optional[ModelDescriptor]:
    models = get_available_models(optional_feature_supported, low_resource, catalog)
    idx = next((i for i, m in enumerate(models) if m.id == model_id), -1)
    if idx <= 0:
        # Already the smallest, or not in the usable list
        return None
    return models[idx - 1]


def smallest_model(
    optional_feature_supported: bool = True,
    low_resource: bool = False,
    catalog: Sequence[ModelDescriptor] = CATALOG,
) -> Optional[ModelDescriptor]:
    models = get_available_models(optional_feature_supported, low_resource, catalog)
    return models[0] if models else None


def estimate_accelerator_memory_mb(profile: Optional[HardwareProfile] = None) -> float:
    profile = profile or detect_hardware()
    if profile.vram_gb:
        return profile.vram_gb * 1024
    # Unified memory (MPS) or CPU inference shares system RAM
    return profile.ram_gb * 1024


def recommend_model(
    optional_feature_supported: bool = True,
    low_resource: bool = False,
    profile: Optional[HardwareProfile] = None,
    catalog: Sequence[ModelDescriptor] = CATALOG,
) -> Optional[ModelDescriptor]:
    """
    Largest compatible model that fits in 60% of the estimated accelerator
    memory; the smallest compatible model when nothing fits.
    """
    models = get_available_models(optional_feature_supported, low_resource, catalog)
    if not models:
        return None
    budget_mb = estimate_accelerator_memory_mb(profile) * 0.6
    fitting = [m for m in models if m.mem_req_mb <= budget_mb]
    if not fitting:
        return models[0]
    return max(fitting, key=lambda m: m.mem_req_mb)
