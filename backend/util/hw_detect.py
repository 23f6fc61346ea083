# backend/util/hw_detect.py
from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass
from typing import Optional, Tuple

import psutil

import config as cfg

log = logging.getLogger("hearth.hw")


@dataclass
class HardwareProfile:
    os: str
    arch: str
    cpu_cores: int
    ram_gb: float
    available_ram_mb: float
    has_nvidia: bool
    cuda_name: Optional[str]
    vram_gb: Optional[float]
    has_mps: bool


@dataclass(frozen=True)
class AcceleratorProbe:
    """Result of a capability probe, as consumed by the session controller."""
    accelerated: bool
    optional_feature_supported: bool
    vendor_info: Optional[str] = None
    error_reason: Optional[str] = None


def detect_hardware() -> HardwareProfile:
    os_name = platform.system().lower()
    arch = platform.machine().lower()
    cpu_cores = psutil.cpu_count(logical=True) or 1
    vm = psutil.virtual_memory()
    ram_gb = round(vm.total / (1024 ** 3), 2)
    available_ram_mb = round(vm.available / (1024 ** 2), 1)

    has_nvidia = False
    cuda_name = None
    vram_gb = None
    has_mps = False

    try:
        import torch
    except ImportError:
        log.debug("PyTorch not installed; cannot detect GPU.")
        torch = None  # type: ignore[assignment]

    if torch is not None:
        # --- NVIDIA GPU detection ---
        has_nvidia = torch.cuda.is_available()
        if has_nvidia:
            try:
                props = torch.cuda.get_device_properties(0)
                cuda_name = props.name
                vram_gb = round(props.total_memory / (1024 ** 3), 2)
            except Exception:
                cuda_name = None
                vram_gb = None

        # --- MPS (macOS Metal) detection ---
        try:
            has_mps = hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
        except Exception:
            has_mps = False

    return HardwareProfile(
        os=os_name,
        arch=arch,
        cpu_cores=cpu_cores,
        ram_gb=ram_gb,
        available_ram_mb=available_ram_mb,
        has_nvidia=has_nvidia,
        cuda_name=cuda_name,
        vram_gb=vram_gb,
        has_mps=has_mps,
    )


def _half_precision_supported() -> bool:
    try:
        import torch
    except ImportError:
        return False
    try:
        if torch.cuda.is_available():
            major, _minor = torch.cuda.get_device_capability(0)
            # fp16 arithmetic is fast from compute capability 6.0 (Pascal) up
            return major >= 6
        return hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
    except Exception:
        return False


def probe_accelerator(profile: Optional[HardwareProfile] = None) -> AcceleratorProbe:
    """
    Report whether a GPU usable by llama.cpp is present and whether it can run
    half-precision weights (the narrow-tier models in the catalog).
    """
    try:
        profile = profile or detect_hardware()
    except Exception as e:
        log.exception("Hardware detection failed: %s", e)
        return AcceleratorProbe(
            accelerated=False,
            optional_feature_supported=False,
            error_reason=f"Failed to detect GPU: {e}",
        )

    if profile.has_nvidia:
        vendor = f"NVIDIA {profile.cuda_name}" if profile.cuda_name else "NVIDIA GPU"
        if profile.vram_gb is not None:
            vendor = f"{vendor} ({profile.vram_gb:.1f} GB VRAM)"
        return AcceleratorProbe(
            accelerated=True,
            optional_feature_supported=_half_precision_supported(),
            vendor_info=vendor,
        )

    if profile.has_mps:
        return AcceleratorProbe(
            accelerated=True,
            optional_feature_supported=_half_precision_supported(),
            vendor_info="Apple Metal (MPS)",
        )

    return AcceleratorProbe(
        accelerated=False,
        optional_feature_supported=False,
        error_reason="No compatible GPU found (CUDA or Metal)",
    )


def accelerator_memory_usage() -> Optional[Tuple[int, int]]:
    """(used_bytes, total_bytes) on the first CUDA device, or None."""
    try:
        import torch
    except ImportError:
        return None
    try:
        if not torch.cuda.is_available():
            return None
        free, total = torch.cuda.mem_get_info(0)
    except Exception as e:
        log.debug("CUDA memory query failed: %s", e)
        return None
    return int(total - free), int(total)


def is_non_interactive_environment() -> bool:
    """True under pytest or when demo mode is forced by configuration."""
    return bool(cfg.settings.force_demo_mode) or "PYTEST_CURRENT_TEST" in os.environ


def is_low_resource_device(profile: Optional[HardwareProfile] = None) -> bool:
    """
    Constrained devices only see the smallest catalog entries. An explicit
    setting wins over detection.
    """
    s = cfg.settings
    if s.low_resource_mode is not None:
        return bool(s.low_resource_mode)
    try:
        profile = profile or detect_hardware()
    except Exception:
        return False
    return profile.ram_gb < s.low_resource_ram_gb


class HardwareProber:
    """CapabilityProber backed by psutil/torch."""

    def probe(self) -> AcceleratorProbe:
        return probe_accelerator()

    def is_non_interactive_environment(self) -> bool:
        return is_non_interactive_environment()
