#!/usr/bin/env python3
"""
SYMREG - Symmetric Linear Registration

Register two 3-D images with a rigid or affine transform.

Usage:
    symreg register image1.nii.gz image2.nii.gz --type rigid -o transform.txt
    symreg register image1.nii.gz image2.nii.gz --config config.yaml
"""

import io
import sys
import argparse
from pathlib import Path
from typing import Dict, List, Optional

import torch

from .config import load_config, RegistrationConfig, ConfigurationError
from .data import (
    Image,
    load_image,
    load_mask,
    load_directions,
    save_image,
    save_transform,
    load_transform,
)
from .preprocessing import reslice
from .registration import (
    InitType,
    InitialisationError,
    LinearRegistration,
    LinearTransform,
    create_transform,
    get_metric,
)
from .visualization import parse_gradient_descent_log, plot_multi_level_convergence
from .utils.logging_config import setup_logging, get_logger, LogContext, Timer
from .utils.device import get_device

logger = get_logger("main")


def _float_list(text: str) -> List[float]:
    return [float(v) for v in text.split(",") if v.strip()]


def _int_list(text: str) -> List[int]:
    return [int(v) for v in text.split(",") if v.strip()]


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="symreg register",
        description="SYMREG - Symmetric multi-resolution linear registration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Rigid registration with default settings
  symreg register moving.nii.gz fixed.nii.gz -o rigid.txt

  # Affine, three levels, local cross-correlation
  symreg register a.nii.gz b.nii.gz --type affine --metric local_cross_correlation \\
      --scale 0.25,0.5,1 --niter 300

  # Use a preset and write the convergence plot
  symreg register a.nii.gz b.nii.gz --preset fast --log-stream gd.log --plot conv.png
        """,
    )

    # Input/Output
    parser.add_argument("image1", help="First input image")
    parser.add_argument("image2", help="Second input image")
    parser.add_argument("--mask1", type=str, help="Mask of the first image")
    parser.add_argument("--mask2", type=str, help="Mask of the second image")
    parser.add_argument("--directions", type=str, help="N x 3 direction matrix (orientation metrics)")
    parser.add_argument("--init-matrix", type=str, help="Initial full transform (text matrix)")
    parser.add_argument("--output", "-o", type=str, help="Output full transform (text matrix)")
    parser.add_argument("--transformed", type=str, help="Image 1 resampled into image 2 space")
    parser.add_argument("--midway-prefix", type=str, help="Prefix for both images resampled into the midway space")
    parser.add_argument("--log-stream", type=str, help="Gradient descent log stream file")
    parser.add_argument("--plot", type=str, help="Convergence plot (PNG)")

    # Configuration
    parser.add_argument("--config", "-c", type=str, help="Path to configuration YAML file")
    parser.add_argument("--preset", "-p", type=str, help="Configuration preset (see 'symreg presets')")

    # Registration
    parser.add_argument("--type", dest="transform", choices=["rigid", "affine"], help="Transform type")
    parser.add_argument(
        "--metric",
        choices=["mean_squared", "cross_correlation", "local_cross_correlation", "orientation_mean_squared"],
        help="Similarity metric",
    )
    parser.add_argument("--mode", choices=["symmetric", "asymmetric"], help="Registration mode")
    parser.add_argument("--init", dest="init_type", choices=["mass", "geometric", "none"], help="Initialisation")
    parser.add_argument("--scale", type=_float_list, help="Scale factor per level, e.g. 0.5,1")
    parser.add_argument("--niter", type=_int_list, help="Max iterations (one value or one per level)")
    parser.add_argument("--sparsity", type=_float_list, help="Fraction of voxels skipped (per level)")
    parser.add_argument("--smooth", type=float, help="Smoothing factor")
    parser.add_argument("--extent", type=_int_list, help="Kernel extent in voxels per axis (a single value applies to all axes)")

    # Device
    parser.add_argument(
        "--device",
        type=str,
        choices=["auto", "cpu", "cuda"],
        help="Computation device (default: from config)",
    )

    # Verbosity
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")

    return parser.parse_args(argv)


def build_overrides(args) -> Dict:
    """Config overrides from the command line (only options that were given)"""
    linear = {
        "transform": args.transform,
        "metric": args.metric,
        "mode": args.mode,
        "init_type": args.init_type,
        "scale_factor": args.scale,
        "max_iter": args.niter,
        "sparsity": args.sparsity,
        "smooth_factor": args.smooth,
        "kernel_extent": args.extent,
    }
    io_config = {
        "image1": args.image1,
        "image2": args.image2,
        "mask1": args.mask1,
        "mask2": args.mask2,
        "directions": args.directions,
        "init_matrix": args.init_matrix,
        "output_transform": args.output,
        "transformed": args.transformed,
        "midway_prefix": args.midway_prefix,
        "log_stream": args.log_stream,
        "plot": args.plot,
    }
    overrides = {
        "linear": {k: v for k, v in linear.items() if v is not None},
        "io": {k: v for k, v in io_config.items() if v is not None},
    }
    if args.device:
        overrides["device"] = args.device
    if args.verbose:
        overrides["logging"] = {"level": "DEBUG"}
    return overrides


def apply_initial_matrix(path: str, transform: LinearTransform, image1: Image, image2: Image) -> None:
    """Set the transform from a text matrix; the centre defaults to the midpoint of the image centres"""
    matrix, centre = load_transform(path)
    if centre is None:
        centre = (image1.header.centre() + image2.header.centre()) / 2.0
    transform.set_centre(centre)
    transform.set_transform(matrix)
    logger.info(f"Initial transform from {Path(path).name}")


def save_outputs(
    config: RegistrationConfig,
    registration: LinearRegistration,
    transform: LinearTransform,
    image1: Image,
    image2: Image,
) -> None:
    io_config = config.io

    if io_config.output_transform:
        save_transform(transform.get_transform(), io_config.output_transform, centre=transform.get_centre())

    if io_config.transformed:
        # target points in image 2 map back to image 1 through T^-1
        inverse = torch.linalg.inv(transform.get_transform())
        warped = reslice(image1, image2.header, inverse)
        save_image(warped, io_config.transformed, description="transformed image 1")

    if io_config.midway_prefix:
        if registration.midway_header is None:
            logger.warning("Midway images are only available in symmetric mode")
        else:
            header = registration.midway_header
            midway1 = reslice(image1, header, transform.get_transform_half_inverse())
            midway2 = reslice(image2, header, transform.get_transform_half())
            save_image(midway1, f"{io_config.midway_prefix}1.nii.gz", description="image 1 in midway space")
            save_image(midway2, f"{io_config.midway_prefix}2.nii.gz", description="image 2 in midway space")


def run_register(args) -> int:
    """Run the registration pipeline"""
    config = load_config(args.config, args.preset, build_overrides(args))
    setup_logging(config.logging.level, config.logging.log_file)

    device = get_device(config.device)
    linear = config.linear
    io_config = config.io

    logger.info("Loading images...")
    with Timer("Image loading", logger):
        image1 = load_image(io_config.image1, device=device)
        image2 = load_image(io_config.image2, device=device)
        mask1 = load_mask(io_config.mask1, device=device) if io_config.mask1 else None
        mask2 = load_mask(io_config.mask2, device=device) if io_config.mask2 else None
        logger.info(f"Image 1: {image1}")
        logger.info(f"Image 2: {image2}")

    transform = create_transform(linear.transform)
    metric = get_metric(linear.metric)

    registration = LinearRegistration.from_config(config, log_context=LogContext(), device=device)
    if io_config.directions:
        registration.set_directions(load_directions(io_config.directions))
    if io_config.init_matrix:
        apply_initial_matrix(io_config.init_matrix, transform, image1, image2)
        if registration.init_type != InitType.NONE:
            logger.info("Initial matrix given: skipping centre initialisation")
            registration.set_init_type(InitType.NONE)

    log_buffer = io.StringIO() if io_config.plot else None
    log_file = open(io_config.log_stream, "w") if io_config.log_stream else None
    stream = _Tee(log_file, log_buffer)
    try:
        registration.set_gradient_descent_log_stream(stream if stream.sinks else None)
        with Timer("Linear registration", logger):
            registration.run(metric, transform, image1, image2, mask1, mask2)
    finally:
        if log_file is not None:
            log_file.close()

    save_outputs(config, registration, transform, image1, image2)

    if io_config.plot:
        history = parse_gradient_descent_log(log_buffer.getvalue())
        plot_multi_level_convergence(
            history,
            output_path=io_config.plot,
            title=f"{linear.transform.capitalize()} Convergence ({linear.metric})",
        )

    logger.info("=" * 60)
    logger.info("REGISTRATION COMPLETE")
    logger.info("=" * 60)
    print(transform.get_transform().numpy())
    return 0


class _Tee:
    """Write the log stream to every non-None sink"""

    def __init__(self, *sinks):
        self.sinks = [s for s in sinks if s is not None]

    def write(self, text: str) -> None:
        for sink in self.sinks:
            sink.write(text)

    def flush(self) -> None:
        for sink in self.sinks:
            sink.flush()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    setup_logging("DEBUG" if args.verbose else "INFO")

    try:
        return run_register(args)
    except (ConfigurationError, InitialisationError, FileNotFoundError, ValueError) as e:
        logger.error(f"Registration failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
