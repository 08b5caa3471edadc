"""
SYMREG Image Loader

Load images into SYMREG Image containers.

NIfTI files are read with nibabel so the affine is used verbatim.
Every other ITK-readable format goes through SimpleITK; its LPS
origin/spacing/direction are converted to the RAS scanner convention
used by NIfTI so that images from both readers can be registered together.
"""

from pathlib import Path
from typing import Tuple, Union

import numpy as np
import torch
import nibabel as nib
import SimpleITK as sitk

from .image import Image, ImageHeader
from ..utils.logging_config import get_logger

logger = get_logger("loader")

NIFTI_SUFFIXES = (".nii", ".nii.gz")

# LPS (ITK) <-> RAS (NIfTI) scanner convention
LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def is_nifti(path: Union[str, Path]) -> bool:
    return str(path).lower().endswith(NIFTI_SUFFIXES)


def _read_nifti(path: Path) -> Tuple[np.ndarray, np.ndarray]:
    nii = nib.load(str(path))
    data = np.asanyarray(nii.dataobj).astype(np.float32)
    return data, np.asarray(nii.affine, dtype=np.float64)


def _read_sitk(path: Path) -> Tuple[np.ndarray, np.ndarray]:
    sitk_image = sitk.ReadImage(str(path))
    dim = sitk_image.GetDimension()
    if dim != 3:
        raise ValueError(f"Expected a 3-D image, got {dim}-D: {path}")

    # SimpleITK arrays are [Z, Y, X(, C)]; SYMREG stores [X, Y, Z(, V)]
    array = sitk.GetArrayFromImage(sitk_image).astype(np.float32)
    if array.ndim == 4:
        array = array.transpose(2, 1, 0, 3)
    else:
        array = array.transpose(2, 1, 0)

    direction = np.asarray(sitk_image.GetDirection(), dtype=np.float64).reshape(3, 3)
    spacing = np.asarray(sitk_image.GetSpacing(), dtype=np.float64)
    origin = np.asarray(sitk_image.GetOrigin(), dtype=np.float64)

    affine_lps = np.eye(4)
    affine_lps[:3, :3] = direction @ np.diag(spacing)
    affine_lps[:3, 3] = origin
    return array, LPS_TO_RAS @ affine_lps


def load_image(
    path: Union[str, Path],
    device: torch.device = torch.device("cpu"),
    dtype: torch.dtype = torch.float32,
) -> Image:
    """
    Load a 3-D or 4-D image

    Args:
        path: Image file (.nii/.nii.gz via nibabel, anything else via SimpleITK)
        device: Target device for the data tensor
        dtype: Data type of the data tensor

    Returns:
        SYMREG Image
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    logger.info(f"Loading image: {path.name}")

    if is_nifti(path):
        data, affine = _read_nifti(path)
    else:
        data, affine = _read_sitk(path)

    # Drop trailing singleton axes (e.g. NIfTI [X, Y, Z, 1])
    while data.ndim > 3 and data.shape[-1] == 1:
        data = data[..., 0]
    if data.ndim not in (3, 4):
        raise ValueError(f"Expected a 3-D or 4-D image, got shape {data.shape}: {path}")

    header = ImageHeader(shape=data.shape, affine=affine)
    image = Image(torch.from_numpy(np.ascontiguousarray(data)).to(device=device, dtype=dtype), header)

    logger.debug(f"  Shape: {header.shape}")
    logger.debug(f"  Spacing: {[f'{s:.3f}mm' for s in header.spacing]}")

    return image


def load_mask(
    path: Union[str, Path],
    device: torch.device = torch.device("cpu"),
) -> Image:
    """Load a binary mask (values > 0.5 are inside)"""
    image = load_image(path, device=device)
    if image.ndim != 3:
        raise ValueError(f"Mask must be a 3-D image, got shape {image.shape}: {path}")
    return image.like(image.data > 0.5)


def load_directions(path: Union[str, Path]) -> torch.Tensor:
    """
    Load a direction set as an [N, 3] tensor

    Plain text, one direction per row (x y z). Rows are not normalised here;
    the metric evaluation wrapper validates and normalises them.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Directions file not found: {path}")

    directions = np.atleast_2d(np.loadtxt(str(path), comments="#", dtype=np.float64))
    if directions.shape[1] != 3:
        raise ValueError(f"Directions must be N x 3, got {directions.shape}: {path}")
    return torch.from_numpy(directions)
