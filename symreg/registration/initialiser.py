"""
SYMREG Transform Initialisation

Starting estimates for linear registration: align the centres of mass
or the geometric centres of the two images.
"""

from enum import Enum
from typing import Union

import torch

from ..data.image import Image
from ..utils.logging_config import get_logger
from .transforms import LinearTransform, DTYPE

logger = get_logger("initialiser")


class InitialisationError(ValueError):
    """Raised when an image cannot provide a meaningful starting transform"""


class InitType(str, Enum):
    MASS = "mass"
    GEOMETRIC = "geometric"
    NONE = "none"


def centre_of_mass(image: Image, name: str = "image") -> torch.Tensor:
    """
    Intensity-weighted centre in scanner coordinates

    Uses the first volume of 4-D images; negative intensities count as zero.

    Raises:
        InitialisationError: If the image has no positive mass
    """
    weights = image.volumes()[0].to(torch.float64).clamp(min=0)
    mass = float(weights.sum())
    if not torch.isfinite(torch.tensor(mass)):
        raise InitialisationError(f"Cannot compute centre of mass of {name}: intensities are not finite")
    if mass <= 0:
        raise InitialisationError(f"Cannot compute centre of mass of {name}: image has zero mass")

    voxels = image.header.voxel_grid(device=weights.device)
    voxel_centre = (voxels * weights.unsqueeze(-1)).reshape(-1, 3).sum(dim=0) / mass
    return image.header.voxel_to_scanner(voxel_centre.cpu())


def _characteristic_radius(image1: Image, image2: Image) -> float:
    extents = list(image1.header.extent) + list(image2.header.extent)
    return 0.5 * sum(extents) / len(extents)


def _initialise_from_centres(
    transform: LinearTransform,
    centre1: torch.Tensor,
    centre2: torch.Tensor,
    radius: float,
) -> None:
    centre1 = centre1.to(DTYPE)
    centre2 = centre2.to(DTYPE)
    transform.set_parameter_vector(transform.identity_parameters())
    transform.set_centre((centre1 + centre2) / 2.0)
    matrix = torch.eye(4, dtype=DTYPE)
    matrix[:3, 3] = centre2 - centre1
    transform.set_transform(matrix)
    transform.set_radius(radius)


def initialise_using_image_mass(image1: Image, image2: Image, transform: LinearTransform) -> None:
    """Align centres of mass; the linear part starts at identity"""
    centre1 = centre_of_mass(image1, "image1")
    centre2 = centre_of_mass(image2, "image2")
    logger.debug(f"Centres of mass: {centre1.tolist()} -> {centre2.tolist()}")
    _initialise_from_centres(transform, centre1, centre2, _characteristic_radius(image1, image2))


def initialise_using_image_centres(image1: Image, image2: Image, transform: LinearTransform) -> None:
    """Align geometric grid centres; the linear part starts at identity"""
    centre1 = image1.header.centre()
    centre2 = image2.header.centre()
    logger.debug(f"Geometric centres: {centre1.tolist()} -> {centre2.tolist()}")
    _initialise_from_centres(transform, centre1, centre2, _characteristic_radius(image1, image2))


def initialise(
    init_type: Union[InitType, str],
    image1: Image,
    image2: Image,
    transform: LinearTransform,
) -> None:
    """Dispatch on the initialisation strategy"""
    init_type = InitType(init_type)
    if init_type == InitType.MASS:
        initialise_using_image_mass(image1, image2, transform)
    elif init_type == InitType.GEOMETRIC:
        initialise_using_image_centres(image1, image2, transform)
    else:
        logger.debug("No initialisation: keeping current transform parameters")
