"""SYMREG Data Module - Image containers, loading and saving"""

from .image import Image, ImageHeader
from .loader import load_image, load_mask, load_directions
from .saver import save_image, save_transform, load_transform

__all__ = [
    "Image",
    "ImageHeader",
    "load_image",
    "load_mask",
    "load_directions",
    "save_image",
    "save_transform",
    "load_transform",
]
