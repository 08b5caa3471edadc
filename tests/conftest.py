# Ensure the repository root is on sys.path
import sys
import os

import pytest
import torch

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from symreg.data import Image, ImageHeader  # noqa: E402

# offset (mm) of the secondary blob relative to the main one; breaks rotational symmetry
SECONDARY_OFFSET = (5.0, 3.0, -4.0)


def make_header(shape=(36, 36, 36), spacing=1.0, origin=None):
    """Axis-aligned header centred on the scanner origin unless origin is given"""
    spacing = [float(spacing)] * 3 if isinstance(spacing, (int, float)) else [float(s) for s in spacing]
    affine = torch.eye(4, dtype=torch.float64)
    for axis in range(3):
        affine[axis, axis] = spacing[axis]
    if origin is None:
        origin = [-(n - 1) / 2.0 * s for n, s in zip(shape[:3], spacing)]
    affine[:3, 3] = torch.tensor(origin, dtype=torch.float64)
    return ImageHeader(shape=tuple(shape), affine=affine)


def blob_image(header, centre=(0.0, 0.0, 0.0), sigma=(6.0, 5.0, 4.0)):
    """Anisotropic Gaussian blob plus a smaller offset blob"""
    points = header.voxel_to_scanner(header.voxel_grid())
    centre = torch.tensor(centre, dtype=torch.float64)
    sigma = torch.tensor(sigma, dtype=torch.float64)
    main = torch.exp(-0.5 * (((points - centre) / sigma) ** 2).sum(dim=-1))
    secondary_centre = centre + torch.tensor(SECONDARY_OFFSET, dtype=torch.float64)
    secondary = 0.5 * torch.exp(-0.5 * (((points - secondary_centre) / 3.0) ** 2).sum(dim=-1))
    return Image((main + secondary).to(torch.float32), header)


@pytest.fixture
def header():
    return make_header()


@pytest.fixture
def translation():
    return torch.tensor([2.0, -1.5, 1.0], dtype=torch.float64)


@pytest.fixture
def image1(header):
    return blob_image(header)


@pytest.fixture
def image2(header, translation):
    """image1 content moved by +translation: the full transform image1 -> image2 is x + t"""
    return blob_image(header, centre=tuple(translation.tolist()))


@pytest.fixture
def full_mask(header):
    return Image(torch.ones(header.shape, dtype=torch.bool), header)


@pytest.fixture
def small_header():
    return make_header(shape=(16, 18, 20), spacing=2.0)


@pytest.fixture
def quiet_logs():
    """Silence SYMREG logging for the duration of a test"""
    import logging
    logger = logging.getLogger("SYMREG")
    previous = logger.level
    logger.setLevel(logging.ERROR)
    yield
    logger.setLevel(previous)
