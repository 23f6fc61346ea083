from .ports import CapabilityProber, EngineFactory, EngineHandle, HardDisposable, ProgressCallback, Unloadable

__all__ = ["CapabilityProber", "EngineFactory", "EngineHandle", "HardDisposable", "ProgressCallback", "Unloadable"]
