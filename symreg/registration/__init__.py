"""SYMREG Registration Module"""

from .transforms import (
    LinearTransform,
    RigidTransform,
    AffineTransform,
    LinearUpdate,
    RigidUpdate,
    create_transform,
)
from .initialiser import (
    InitType,
    InitialisationError,
    initialise,
    initialise_using_image_mass,
    initialise_using_image_centres,
)
from .metrics import (
    MetricParams,
    Metric,
    MeanSquared,
    CrossCorrelation,
    LocalCrossCorrelation,
    OrientationMeanSquared,
    Evaluate,
    get_metric,
)
from .optimizers import GradientDescent
from .linear import LinearRegistration, LevelReport

__all__ = [
    "LinearTransform",
    "RigidTransform",
    "AffineTransform",
    "LinearUpdate",
    "RigidUpdate",
    "create_transform",
    "InitType",
    "InitialisationError",
    "initialise",
    "initialise_using_image_mass",
    "initialise_using_image_centres",
    "MetricParams",
    "Metric",
    "MeanSquared",
    "CrossCorrelation",
    "LocalCrossCorrelation",
    "OrientationMeanSquared",
    "Evaluate",
    "get_metric",
    "GradientDescent",
    "LinearRegistration",
    "LevelReport",
]
