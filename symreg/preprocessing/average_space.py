"""
SYMREG Average Space

Compute the minimal grid ("average space") covering a set of images,
each mapped by its own transform. Used to build the midway space of
symmetric registration, where neither input is a privileged target.
"""

import math
from typing import List, Optional, Sequence

import torch

from ..data.image import ImageHeader
from ..utils.logging_config import get_logger

logger = get_logger("average_space")


def polar_rotation(matrix: torch.Tensor) -> torch.Tensor:
    """Orthogonal polar factor of a 3x3 matrix (closest orthogonal matrix)"""
    u, _, vh = torch.linalg.svd(matrix)
    return u @ vh


def _align_axes(rotation: torch.Tensor, reference: torch.Tensor) -> torch.Tensor:
    """Permute and flip the columns of rotation to best match reference"""
    aligned = torch.zeros_like(rotation)
    available = [0, 1, 2]
    for column in range(3):
        dots = [float(rotation[:, c] @ reference[:, column]) for c in available]
        best = max(range(len(available)), key=lambda i: abs(dots[i]))
        sign = 1.0 if dots[best] >= 0 else -1.0
        aligned[:, column] = sign * rotation[:, available.pop(best)]
    return aligned


def compute_bounding_box(
    headers: Sequence[ImageHeader],
    transforms: Sequence[torch.Tensor],
    rotation: torch.Tensor,
) -> torch.Tensor:
    """
    Bounding box of all voxel-edge corners in the rotated frame

    Returns:
        [2, 3] tensor of (min corner, max corner) in frame coordinates
    """
    corners = []
    for header, transform in zip(headers, transforms):
        points = header.corners()
        corners.append(points @ transform[:3, :3].T + transform[:3, 3])
    local = torch.cat(corners, dim=0) @ rotation
    return torch.stack([local.min(dim=0).values, local.max(dim=0).values])


def compute_minimum_average_header(
    headers: Sequence[ImageHeader],
    resolution: float = 1.0,
    padding: Optional[Sequence[float]] = None,
    transforms: Optional[Sequence[torch.Tensor]] = None,
) -> ImageHeader:
    """
    Minimal isotropic grid covering all headers under their transforms

    Args:
        headers: Image headers
        resolution: Output voxel size as a multiple of the mean input voxel size
        padding: 4 homogeneous components; the first 3 are padding in output
                 voxels added on each side of the bounding box
        transforms: One 4x4 per header mapping that header's scanner space
                    into the average space (identity if None)

    Returns:
        3-D header of the average space
    """
    if not headers:
        raise ValueError("At least one header is required to compute an average space")
    if resolution <= 0:
        raise ValueError(f"Average space resolution must be positive, got {resolution}")

    if transforms is None:
        transforms = [torch.eye(4, dtype=torch.float64) for _ in headers]
    if len(transforms) != len(headers):
        raise ValueError(
            f"Number of transforms ({len(transforms)}) does not match number of headers ({len(headers)})"
        )
    transforms: List[torch.Tensor] = [torch.as_tensor(t, dtype=torch.float64) for t in transforms]

    if padding is None:
        padding = (0.0, 0.0, 0.0, 0.0)
    padding = torch.as_tensor(padding, dtype=torch.float64)
    if padding.numel() != 4:
        raise ValueError(f"Padding must have 4 components, got {padding.numel()}")

    # average orientation of the transformed headers
    rotations = [polar_rotation((t @ h.affine)[:3, :3]) for h, t in zip(headers, transforms)]
    reference = rotations[0]
    total = sum(_align_axes(r, reference) for r in rotations)
    rotation = polar_rotation(total)

    spacings = [s for h in headers for s in h.spacing]
    spacing = resolution * sum(spacings) / len(spacings)

    box = compute_bounding_box(headers, transforms, rotation)
    pad = padding[:3] * spacing
    low, high = box[0] - pad, box[1] + pad

    shape = [max(1, int(math.ceil(float(e) / spacing - 1e-6))) for e in (high - low)]

    # centre the grid on the bounding box
    centre = 0.5 * (low + high)
    origin = centre - spacing * (torch.tensor(shape, dtype=torch.float64) - 1) / 2

    affine = torch.eye(4, dtype=torch.float64)
    affine[:3, :3] = rotation * spacing
    affine[:3, 3] = rotation @ origin

    header = ImageHeader(shape=tuple(shape), affine=affine)
    logger.debug(f"Average space: shape={header.shape}, spacing={spacing:.3f}mm")
    return header
