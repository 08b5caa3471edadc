"""SYMREG Preprocessing Module - Filters, interpolation, average space and level preparation"""

from .interpolation import LinearInterpolator, NearestInterpolator, sample_volumes
from .filters import resize, resize_header, smooth, reslice
from .average_space import compute_minimum_average_header, compute_bounding_box
from .levels import (
    PreparationMode,
    LevelWorkingSet,
    SymmetricLevelPreparation,
    AsymmetricLevelPreparation,
)

__all__ = [
    "LinearInterpolator",
    "NearestInterpolator",
    "sample_volumes",
    "resize",
    "resize_header",
    "smooth",
    "reslice",
    "compute_minimum_average_header",
    "compute_bounding_box",
    "PreparationMode",
    "LevelWorkingSet",
    "SymmetricLevelPreparation",
    "AsymmetricLevelPreparation",
]
