"""
SYMREG Image Saver

Save images and transforms with header preservation.
NIfTI output uses nibabel to keep the affine matrix exactly.

GOLDEN RULE: Never lose the original affine matrix.
"""

from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import torch
import nibabel as nib
import SimpleITK as sitk

from .image import Image
from .loader import is_nifti, LPS_TO_RAS
from ..utils.logging_config import get_logger

logger = get_logger("saver")


def save_image(
    image: Image,
    output_path: Union[str, Path],
    description: str = "",
) -> Path:
    """
    Save image data with its exact affine

    Args:
        image: SYMREG Image ([X, Y, Z] or [X, Y, Z, V])
        output_path: Output file path (.nii/.nii.gz via nibabel, else SimpleITK)
        description: Description for logging

    Returns:
        Path to saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = image.data.detach().cpu().numpy()
    if data.dtype == np.bool_:
        data = data.astype(np.uint8)
    else:
        data = data.astype(np.float32)
    affine = image.affine.numpy()

    if is_nifti(output_path):
        nib.save(nib.Nifti1Image(data, affine), str(output_path))
    else:
        _write_sitk(data, affine, output_path)

    if description:
        logger.info(f"Saved {description}: {output_path.name}")
    else:
        logger.info(f"Saved: {output_path.name}")

    return output_path


def _write_sitk(data: np.ndarray, affine: np.ndarray, output_path: Path) -> None:
    affine_lps = LPS_TO_RAS @ affine
    spacing = np.linalg.norm(affine_lps[:3, :3], axis=0)
    direction = affine_lps[:3, :3] / spacing

    if data.ndim == 4:
        sitk_image = sitk.GetImageFromArray(data.transpose(2, 1, 0, 3), isVector=True)
    else:
        sitk_image = sitk.GetImageFromArray(data.transpose(2, 1, 0))
    sitk_image.SetSpacing(tuple(float(s) for s in spacing))
    sitk_image.SetOrigin(tuple(float(o) for o in affine_lps[:3, 3]))
    sitk_image.SetDirection(tuple(float(d) for d in direction.flatten()))
    sitk.WriteImage(sitk_image, str(output_path))


def save_transform(
    matrix: Union[torch.Tensor, np.ndarray],
    output_path: Union[str, Path],
    centre: Optional[Union[torch.Tensor, np.ndarray]] = None,
) -> Path:
    """
    Save a 4x4 transform matrix as plain text

    The centre of rotation, if given, is written as a '#' comment line
    so that the file remains loadable with numpy.loadtxt.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(matrix, torch.Tensor):
        matrix = matrix.detach().cpu().numpy()
    header = ""
    if centre is not None:
        if isinstance(centre, torch.Tensor):
            centre = centre.detach().cpu().numpy()
        header = "centre: " + " ".join(f"{c:.10g}" for c in np.asarray(centre).ravel())

    np.savetxt(str(output_path), np.asarray(matrix, dtype=np.float64), fmt="%.12g", header=header)
    logger.info(f"Saved transform: {output_path.name}")
    return output_path


def load_transform(path: Union[str, Path]) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    """
    Load a transform written by save_transform (or any 3x4 / 4x4 text matrix)

    Returns:
        Tuple of (4x4 float64 matrix, centre or None)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Transform file not found: {path}")

    matrix = np.loadtxt(str(path), comments="#", dtype=np.float64)
    if matrix.shape == (3, 4):
        matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
    if matrix.shape != (4, 4):
        raise ValueError(f"Transform must be 3x4 or 4x4, got {matrix.shape}: {path}")

    centre = None
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if line.startswith("#") and "centre:" in line:
                values = line.split("centre:", 1)[1].split()
                centre = torch.tensor([float(v) for v in values], dtype=torch.float64)

    return torch.from_numpy(matrix), centre
