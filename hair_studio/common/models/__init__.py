from .face_boundary import FaceBoundary
from .generation import GenerationMode, GenerationRequest, GenerationResult
from .hair_mask import HairMask
from .photo import Photo
from .style import HairStrategy, StyleDescriptor

__all__ = [
    "FaceBoundary",
    "GenerationMode",
    "GenerationRequest",
    "GenerationResult",
    "HairMask",
    "HairStrategy",
    "Photo",
    "StyleDescriptor",
]
