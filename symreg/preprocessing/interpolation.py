"""
SYMREG Interpolation

Sample images at arbitrary scanner-space points with torch grid_sample.

grid_sample expects normalised coordinates in [-1, 1] ordered (W, H, D).
Volumes are passed as [1, V, X, Y, Z] so that D=X, H=Y, W=Z, i.e. the
sampling grid is (k, j, i) in voxel terms. With align_corners=True,
-1 and +1 are the centres of the first and last voxel.
"""

from typing import Tuple

import torch
import torch.nn.functional as F

from ..data.image import Image

# Tolerance (in voxels) when deciding whether a point lies inside the grid
INSIDE_TOLERANCE = 1e-4

MODES = {"linear": "bilinear", "nearest": "nearest"}


def _normalise(coordinate: torch.Tensor, size: int) -> torch.Tensor:
    if size > 1:
        return 2.0 * coordinate / (size - 1) - 1.0
    return coordinate * 0.0


def inside_grid(voxel_points: torch.Tensor, spatial_shape: Tuple[int, int, int]) -> torch.Tensor:
    """Boolean [P] mask of points within the sampled extent of the grid"""
    inside = torch.ones(voxel_points.shape[:-1], dtype=torch.bool, device=voxel_points.device)
    for axis, size in enumerate(spatial_shape):
        v = voxel_points[..., axis]
        if size > 1:
            inside &= (v >= -INSIDE_TOLERANCE) & (v <= size - 1 + INSIDE_TOLERANCE)
        else:
            inside &= v.abs() <= 0.5
    return inside


def sample_volumes(
    volumes: torch.Tensor,
    voxel_points: torch.Tensor,
    mode: str = "linear",
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sample [V, X, Y, Z] volumes at voxel coordinates

    Args:
        volumes: Image data as [V, X, Y, Z]
        voxel_points: Voxel coordinates [P, 3] (may require grad)
        mode: "linear" (trilinear, differentiable w.r.t. points) or "nearest"

    Returns:
        Tuple of (values [P, V], inside [P])
    """
    if mode not in MODES:
        raise ValueError(f"Unknown interpolation: {mode}. Must be one of {list(MODES)}")

    spatial_shape = tuple(volumes.shape[1:])
    grid = torch.stack(
        [_normalise(voxel_points[:, axis], spatial_shape[axis]) for axis in (2, 1, 0)],
        dim=-1,
    )
    grid = grid.to(volumes.dtype).view(1, -1, 1, 1, 3)

    sampled = F.grid_sample(
        volumes.unsqueeze(0),
        grid,
        mode=MODES[mode],
        padding_mode="border",
        align_corners=True,
    )
    values = sampled[0, :, :, 0, 0].transpose(0, 1)
    return values, inside_grid(voxel_points, spatial_shape)


class LinearInterpolator:
    """Trilinear interpolation of an image at scanner-space points"""

    mode = "linear"

    def __init__(self, image: Image):
        self.image = image
        volumes = image.volumes()
        if not volumes.is_floating_point():
            volumes = volumes.to(torch.float32)
        self.volumes = volumes

    def __call__(self, scanner_points: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        voxel_points = self.image.header.scanner_to_voxel(scanner_points)
        return sample_volumes(self.volumes, voxel_points, self.mode)


class NearestInterpolator(LinearInterpolator):
    """Nearest-neighbour interpolation, used for masks"""

    mode = "nearest"

    def contains(self, scanner_points: torch.Tensor) -> torch.Tensor:
        """Boolean [P]: inside the grid and inside the (first volume of the) mask"""
        values, inside = self(scanner_points.detach())
        return inside & (values[:, 0] > 0.5)
