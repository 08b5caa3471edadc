"""
SYMREG Device Management

Platform-aware device selection:
- macOS: CPU only (MPS does not support grid_sampler_3d or float64)
- Linux: CUDA GPU if available, fallback to CPU
"""

import platform
import torch
from typing import Optional
from .logging_config import get_logger

logger = get_logger("device")


def get_device(device: Optional[str] = None, verbose: bool = True) -> torch.device:
    """
    Get computation device with platform-aware defaults.

    Args:
        device: Explicit device string ("cuda", "cpu") or None/"auto" for auto
        verbose: Whether to log device selection

    Returns:
        torch.device instance
    """
    if device is not None and device != "auto":
        selected = torch.device(device)
    elif platform.system() == "Darwin":
        selected = torch.device("cpu")
        if verbose:
            logger.info("macOS detected: using CPU (MPS lacks grid_sampler_3d)")
    elif torch.cuda.is_available():
        selected = torch.device("cuda")
    else:
        selected = torch.device("cpu")

    if verbose:
        logger.info(f"Using device: {selected}")
        if selected.type == "cuda":
            logger.info(f"  GPU: {torch.cuda.get_device_name(0)}")

    return selected
