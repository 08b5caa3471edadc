"""
SYMREG Image Data Structures

Image header (grid + voxel-to-scanner mapping) and image container.

Data layout follows the header: a 3-D image is stored as ``(X, Y, Z)``,
a 4-D image as ``(X, Y, Z, V)`` where the last axis holds volumes.
Voxel index ``(i, j, k)`` maps to scanner (world, mm) coordinates through
the 4x4 ``affine`` exactly like a NIfTI header.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union
import itertools

import numpy as np
import torch


@dataclass(eq=False)
class ImageHeader:
    """
    Geometry of an image grid

    Attributes:
        shape: Spatial sizes (X, Y, Z) plus optional number of volumes
        affine: 4x4 voxel-to-scanner matrix (float64, kept on CPU)
    """
    shape: Tuple[int, ...]
    affine: torch.Tensor

    def __post_init__(self):
        self.shape = tuple(int(s) for s in self.shape)
        if len(self.shape) not in (3, 4):
            raise ValueError(f"Image header must be 3-D or 4-D, got shape {self.shape}")
        if any(s < 1 for s in self.shape):
            raise ValueError(f"Image header has a zero extent: shape {self.shape}")

        affine = torch.as_tensor(np.asarray(self.affine), dtype=torch.float64).clone()
        if tuple(affine.shape) != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {tuple(affine.shape)}")
        if abs(float(torch.linalg.det(affine[:3, :3]))) < 1e-12:
            raise ValueError("Affine has a singular linear part (degenerate voxel geometry)")
        self.affine = affine

    @property
    def spatial_shape(self) -> Tuple[int, int, int]:
        return self.shape[:3]

    @property
    def nvolumes(self) -> int:
        return self.shape[3] if len(self.shape) == 4 else 1

    @property
    def nvoxels(self) -> int:
        nx, ny, nz = self.spatial_shape
        return nx * ny * nz

    @property
    def spacing(self) -> Tuple[float, float, float]:
        """Voxel size in mm along each voxel axis"""
        return tuple(float(v) for v in torch.linalg.norm(self.affine[:3, :3], dim=0))

    @property
    def extent(self) -> Tuple[float, float, float]:
        """Physical size of the grid (voxel edges) in mm"""
        return tuple(n * s for n, s in zip(self.spatial_shape, self.spacing))

    @property
    def inverse_affine(self) -> torch.Tensor:
        return torch.linalg.inv(self.affine)

    def voxel_to_scanner(self, points: torch.Tensor) -> torch.Tensor:
        """Map voxel coordinates [..., 3] to scanner coordinates"""
        affine = self.affine.to(device=points.device, dtype=points.dtype)
        return points @ affine[:3, :3].T + affine[:3, 3]

    def scanner_to_voxel(self, points: torch.Tensor) -> torch.Tensor:
        """Map scanner coordinates [..., 3] to voxel coordinates"""
        inverse = self.inverse_affine.to(device=points.device, dtype=points.dtype)
        return points @ inverse[:3, :3].T + inverse[:3, 3]

    def voxel_grid(self, device: Optional[torch.device] = None) -> torch.Tensor:
        """All voxel indices as a float64 tensor [X, Y, Z, 3]"""
        axes = [torch.arange(n, dtype=torch.float64, device=device) for n in self.spatial_shape]
        return torch.stack(torch.meshgrid(*axes, indexing="ij"), dim=-1)

    def corners(self) -> torch.Tensor:
        """Scanner coordinates of the 8 outer voxel-edge corners [8, 3]"""
        bounds = [(-0.5, n - 0.5) for n in self.spatial_shape]
        voxels = torch.tensor(list(itertools.product(*bounds)), dtype=torch.float64)
        return self.voxel_to_scanner(voxels)

    def centre(self) -> torch.Tensor:
        """Scanner coordinates of the geometric grid centre [3]"""
        mid = torch.tensor([(n - 1) / 2.0 for n in self.spatial_shape], dtype=torch.float64)
        return self.voxel_to_scanner(mid)

    def with_shape(self, shape: Tuple[int, ...]) -> "ImageHeader":
        return ImageHeader(shape=shape, affine=self.affine)

    def matches(self, other: "ImageHeader", atol: float = 1e-6) -> bool:
        """Same grid (shape and voxel-to-scanner mapping)"""
        return (
            self.spatial_shape == other.spatial_shape
            and bool(torch.allclose(self.affine, other.affine, atol=atol))
        )


class Image:
    """
    Image container: voxel data tensor + header

    The data tensor may live on any device; the header always stays on CPU.
    """

    def __init__(self, data: Union[torch.Tensor, np.ndarray], header: ImageHeader):
        data = torch.as_tensor(data)
        if tuple(data.shape) != header.shape:
            raise ValueError(
                f"Data shape {tuple(data.shape)} does not match header shape {header.shape}"
            )
        self.data = data
        self.header = header

    @classmethod
    def scratch(
        cls,
        header: ImageHeader,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> "Image":
        """Allocate a zero-filled image on the given header"""
        return cls(torch.zeros(header.shape, dtype=dtype, device=device), header)

    def like(self, data: torch.Tensor) -> "Image":
        """New image with the same header and different data"""
        return Image(data, self.header)

    def to(self, device: Optional[torch.device] = None, dtype: Optional[torch.dtype] = None) -> "Image":
        return Image(self.data.to(device=device, dtype=dtype), self.header)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.header.shape

    @property
    def affine(self) -> torch.Tensor:
        return self.header.affine

    @property
    def ndim(self) -> int:
        return len(self.header.shape)

    @property
    def device(self) -> torch.device:
        return self.data.device

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    def volumes(self) -> torch.Tensor:
        """Data as [V, X, Y, Z] (V=1 for 3-D images)"""
        if self.data.dim() == 3:
            return self.data.unsqueeze(0)
        return self.data.permute(3, 0, 1, 2)

    @classmethod
    def from_volumes(cls, volumes: torch.Tensor, header: ImageHeader) -> "Image":
        """Inverse of volumes(): header decides whether the result is 3-D or 4-D"""
        if len(header.shape) == 3:
            return cls(volumes[0], header)
        return cls(volumes.permute(1, 2, 3, 0), header)

    def __getitem__(self, index):
        return self.data[index]

    def __repr__(self) -> str:
        spacing = ", ".join(f"{s:.2f}" for s in self.header.spacing)
        return f"Image(shape={self.shape}, spacing=({spacing}), dtype={self.dtype})"
