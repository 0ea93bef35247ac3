"""生成式後端：統一的 generate(request) 介面，依 GenerationMode 區分請求形式。"""

from .base import GenerativeBackend, error_kind_for_status
from .gemini_backend import GeminiHairBackend
from .openai_backend import OpenAIImageBackend
from .replicate_backend import ReplicateKontextBackend
from .stability_backend import StabilityInpaintBackend

BACKEND_CLASSES = {
    "gemini": GeminiHairBackend,
    "stability": StabilityInpaintBackend,
    "replicate": ReplicateKontextBackend,
    "openai": OpenAIImageBackend,
}


def build_backends(config):
    """依設定建立所有後端，VENDOR_HAIR 指定的放在第一位。"""
    preferred = str(config.hair_vendor or "gemini").strip().lower()
    order = [preferred] + [name for name in BACKEND_CLASSES if name != preferred]
    backends = []
    for name in order:
        cls = BACKEND_CLASSES.get(name)
        if cls is None:
            print(f"[Backends] Unknown VENDOR_HAIR={config.hair_vendor}, ignoring")
            continue
        backends.append(cls.from_config(config))
    return backends


__all__ = [
    "BACKEND_CLASSES",
    "GeminiHairBackend",
    "GenerativeBackend",
    "OpenAIImageBackend",
    "ReplicateKontextBackend",
    "StabilityInpaintBackend",
    "build_backends",
    "error_kind_for_status",
]
