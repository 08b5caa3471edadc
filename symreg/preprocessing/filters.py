"""
SYMREG Image Filters

Resize, Gaussian smoothing and reslicing of SYMREG images.

All filters are pure: they return new images and never modify their input.
Each filter logs what it does through the logger it is given, so the
registration driver can silence these substeps with LogContext.latch().
"""

import math
import logging
from typing import Optional, Sequence, Tuple, Union

import torch
from deepali.core import functional as U

from ..data.image import Image, ImageHeader
from .interpolation import LinearInterpolator, NearestInterpolator
from ..utils.logging_config import get_logger

logger = get_logger("filters")

# Gaussian kernel half-width in standard deviations
KERNEL_EXTENT_SIGMAS = 2.5

# Points resampled per grid_sample call
RESLICE_CHUNK = 1 << 20

FWHM_TO_SIGMA = 1.0 / (2.0 * math.sqrt(2.0 * math.log(2.0)))

Scale = Union[float, Sequence[float]]


def _per_axis(value: Scale, name: str) -> Tuple[float, float, float]:
    if isinstance(value, (int, float)):
        return (float(value),) * 3
    values = tuple(float(v) for v in value)
    if len(values) == 1:
        return values * 3
    if len(values) != 3:
        raise ValueError(f"{name} must have 1 or 3 components, got {len(values)}")
    return values


def resize_header(header: ImageHeader, scale_factor: Scale) -> ImageHeader:
    """
    Header of a resized grid covering the same physical box

    Args:
        header: Source header
        scale_factor: Scale per axis (or one for all); new size = round(n * s)

    Returns:
        Header with the same outer voxel-edge bounding box
    """
    scales = _per_axis(scale_factor, "scale_factor")
    if any(s <= 0 for s in scales):
        raise ValueError(f"scale_factor must be positive, got {scales}")

    new_size = [max(1, int(round(n * s))) for n, s in zip(header.spatial_shape, scales)]
    factors = torch.tensor(
        [n / m for n, m in zip(header.spatial_shape, new_size)], dtype=torch.float64
    )

    linear = header.affine[:3, :3]
    new_linear = linear * factors  # scales columns (voxel axes)
    affine = header.affine.clone()
    affine[:3, :3] = new_linear
    # keep the first voxel edge in place
    affine[:3, 3] = header.affine[:3, 3] + 0.5 * (new_linear - linear).sum(dim=1)

    shape = tuple(new_size) + tuple(header.shape[3:])
    return ImageHeader(shape=shape, affine=affine)


def gaussian_kernel(sigma: float, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """Normalised 1-D Gaussian kernel, sigma in voxels"""
    radius = max(1, int(math.ceil(KERNEL_EXTENT_SIGMAS * sigma)))
    x = torch.arange(-radius, radius + 1, dtype=dtype)
    kernel = torch.exp(-0.5 * (x / sigma) ** 2)
    return kernel / kernel.sum()


def smooth(
    image: Image,
    stdev: Scale,
    log: Optional[logging.Logger] = None,
) -> Image:
    """
    Separable Gaussian smoothing

    Args:
        image: Input image (3-D, or 4-D filtered volume by volume)
        stdev: Standard deviation in mm (one value or one per axis)
        log: Logger for progress messages

    Returns:
        Smoothed image on the same grid
    """
    log = log or logger
    sigmas_mm = _per_axis(stdev, "stdev")
    if any(s < 0 for s in sigmas_mm):
        raise ValueError(f"Smoothing stdev must be non-negative, got {sigmas_mm}")

    if all(s == 0 for s in sigmas_mm):
        return image.like(image.data.clone())

    log.info(f"Smoothing image {image.shape} with stdev {[round(s, 4) for s in sigmas_mm]} mm")

    dtype = image.dtype if image.data.is_floating_point() else torch.float32
    volumes = image.volumes().to(dtype).unsqueeze(1)  # [V, 1, X, Y, Z]
    weights = torch.ones_like(volumes[:1])

    for axis, (sigma_mm, spacing) in enumerate(zip(sigmas_mm, image.header.spacing)):
        sigma = sigma_mm / spacing
        if sigma <= 0 or image.header.spatial_shape[axis] == 1:
            continue
        kernel = gaussian_kernel(sigma, dtype=dtype).to(volumes.device)
        radius = kernel.numel() // 2
        volumes = U.conv1d(volumes, kernel, dim=2 + axis, padding=radius)
        weights = U.conv1d(weights, kernel, dim=2 + axis, padding=radius)

    # boundary renormalisation: divide by the kernel mass inside the grid
    smoothed = (volumes / weights).squeeze(1)
    return Image.from_volumes(smoothed, image.header)


def reslice(
    image: Image,
    header: ImageHeader,
    matrix: Optional[torch.Tensor] = None,
    interp: str = "linear",
    log: Optional[logging.Logger] = None,
) -> Image:
    """
    Resample an image onto another grid

    Args:
        image: Source image
        header: Target grid (spatial part is used; volumes follow the source)
        matrix: Optional 4x4 mapping target-grid scanner coordinates into
                the source image's scanner space (identity if None)
        interp: "linear" or "nearest"
        log: Logger for progress messages

    Returns:
        Image on the target grid; points outside the source are zero
    """
    log = log or logger
    if interp == "linear":
        interpolator = LinearInterpolator(image)
    elif interp == "nearest":
        interpolator = NearestInterpolator(image)
    else:
        raise ValueError(f"Unknown interpolation: {interp}. Must be 'linear' or 'nearest'")

    out_shape = tuple(header.spatial_shape) + tuple(image.shape[3:])
    out_header = ImageHeader(shape=out_shape, affine=header.affine)
    log.info(f"Reslicing image {image.shape} -> {out_shape} ({interp})")

    voxels = header.voxel_grid(device=image.device).reshape(-1, 3)
    points = header.voxel_to_scanner(voxels)
    if matrix is not None:
        matrix = torch.as_tensor(matrix, dtype=torch.float64).to(points.device)
        points = points @ matrix[:3, :3].T + matrix[:3, 3]

    chunks = []
    with torch.no_grad():
        for start in range(0, points.shape[0], RESLICE_CHUNK):
            values, inside = interpolator(points[start:start + RESLICE_CHUNK])
            chunks.append(values * inside.unsqueeze(1).to(values.dtype))
    values = torch.cat(chunks, dim=0)

    volumes = values.transpose(0, 1).reshape((-1,) + tuple(header.spatial_shape))
    if image.dtype == torch.bool:
        volumes = volumes > 0.5
    elif image.data.is_floating_point():
        volumes = volumes.to(image.dtype)
    return Image.from_volumes(volumes, out_header)


def resize(
    image: Image,
    scale_factor: Scale,
    interp: str = "linear",
    log: Optional[logging.Logger] = None,
) -> Image:
    """
    Resize an image by a scale factor, keeping its physical bounding box

    When downsampling with linear interpolation, the image is first
    low-pass filtered with a Gaussian whose FWHM equals the new voxel size.

    Args:
        image: Source image
        scale_factor: Scale per axis (or one for all)
        interp: "linear" or "nearest"
        log: Logger for progress messages

    Returns:
        Resized image
    """
    log = log or logger
    new_header = resize_header(image.header, scale_factor)
    if new_header.matches(image.header):
        return image.like(image.data.clone())

    log.info(f"Resizing image {image.shape} -> {new_header.shape}")

    source = image
    if interp == "linear":
        stdev = []
        for n, m, spacing in zip(image.header.spatial_shape, new_header.spatial_shape, image.header.spacing):
            ratio = n / m
            stdev.append(ratio * spacing * FWHM_TO_SIGMA if ratio > 1 else 0.0)
        if any(s > 0 for s in stdev):
            source = smooth(image, stdev, log=log)

    return reslice(source, new_header, interp=interp, log=log)
