"""
symreg - Symmetric Linear Registration

Intensity-based rigid and affine registration of two 3-D images with a
coarse-to-fine schedule and an optional symmetric (midway space)
formulation in which neither image is a privileged fixed target.

Key Features:
- World coordinate registration (physical mm coordinates)
- Half-transform parametrisation: half and half-inverse always exact inverses
- Multi-resolution schedule with per-level iterations, sparsity and smoothing
- Mean squared, cross-correlation, local cross-correlation and
  orientation-aware similarity metrics with optional masks
- Preconditioned gradient descent with manifold updates for rotations
"""

__version__ = "1.0.0"
__author__ = "SYMREG Team"

from .config import load_config, default_config, ConfigurationError
from .data import Image, ImageHeader, load_image, load_mask, save_image, save_transform, load_transform
from .registration import (
    LinearRegistration,
    RigidTransform,
    AffineTransform,
    MeanSquared,
    CrossCorrelation,
    LocalCrossCorrelation,
    OrientationMeanSquared,
    InitType,
    InitialisationError,
)

__all__ = [
    # Configuration
    "load_config",
    "default_config",
    "ConfigurationError",
    # Data
    "Image",
    "ImageHeader",
    "load_image",
    "load_mask",
    "save_image",
    "save_transform",
    "load_transform",
    # Registration
    "LinearRegistration",
    "RigidTransform",
    "AffineTransform",
    "MeanSquared",
    "CrossCorrelation",
    "LocalCrossCorrelation",
    "OrientationMeanSquared",
    "InitType",
    "InitialisationError",
]
