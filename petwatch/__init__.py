"""
Petwatch - live camera interpretation of pets with a vision LLM

Uses lazy imports so the CLI starts without loading OpenCV or aiohttp.
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy import handler - imports modules only when accessed."""

    if name in ("LiveSessionController", "ControllerSettings"):
        from . import controller
        return getattr(controller, name)

    if name in ("FrameSampler", "CaptureConstraints", "EncodedImage"):
        from . import frame_sampler
        return getattr(frame_sampler, name)

    if name in ("InferenceClient", "LLMConfig"):
        from . import inference
        return getattr(inference, name)

    if name in ("SubjectStore", "JsonFileKeyValueStore", "MemoryKeyValueStore"):
        from . import store
        return getattr(store, name)

    if name == "SpeechAnnouncer":
        from .speech import SpeechAnnouncer
        return SpeechAnnouncer

    if name in ("ClipAnalyzer", "ClipResult"):
        from . import clip
        return getattr(clip, name)

    if name in ("enable_diagnostics", "metrics"):
        from . import diagnostics
        return getattr(diagnostics, name)

    raise AttributeError(f"module 'petwatch' has no attribute '{name}'")


__all__ = [
    "LiveSessionController",
    "ControllerSettings",
    "FrameSampler",
    "CaptureConstraints",
    "EncodedImage",
    "InferenceClient",
    "LLMConfig",
    "SubjectStore",
    "JsonFileKeyValueStore",
    "MemoryKeyValueStore",
    "SpeechAnnouncer",
    "ClipAnalyzer",
    "ClipResult",
    "enable_diagnostics",
    "metrics",
]
