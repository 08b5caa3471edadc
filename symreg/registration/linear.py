"""
SYMREG Linear Registration

Multi-resolution rigid/affine registration driver with an optional
symmetric (midway space) formulation.

Run order:
1. Validate and broadcast the per-level configuration (no image work yet)
2. Initialise the transform (centre of mass / geometric centre / none)
3. Symmetric mode: build the midway space once from the initial half transforms
4. Per level: prepare working images, build the metric context,
   run gradient descent, commit the parameters to the transform
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, TextIO, Union

import torch

from ..config.config_loader import (
    ConfigurationError,
    LevelSettings,
    LinearConfig,
    RegistrationConfig,
    VALID_INIT_TYPES,
    VALID_MODES,
    check_choice,
    check_kernel_extent,
    check_max_iter,
    check_midway_resolution,
    check_scale_factor,
    check_smooth_factor,
    check_sparsity,
    check_tolerance,
    validate_levels,
)
from ..data.image import Image, ImageHeader
from ..preprocessing.average_space import compute_minimum_average_header
from ..preprocessing.interpolation import NearestInterpolator
from ..preprocessing.levels import (
    AsymmetricLevelPreparation,
    LevelPreparation,
    PreparationMode,
    SymmetricLevelPreparation,
)
from ..utils.logging_config import LogContext
from .initialiser import InitType, initialise
from .metrics import Evaluate, Metric, MetricParams
from .optimizers import GradientDescent
from .transforms import DTYPE, LinearTransform

# Homogeneous padding of the midway space (none)
MIDWAY_PADDING = (0.0, 0.0, 0.0, 1.0)


@dataclass
class LevelReport:
    """Outcome of one resolution level"""
    level: int
    scale_factor: float
    sparsity: float
    max_iter: int
    start_parameters: torch.Tensor
    end_parameters: torch.Tensor
    start_cost: float
    end_cost: float
    iterations: int
    evaluations: int
    reverted: bool = False
    reference_start_cost: Optional[float] = None
    reference_end_cost: Optional[float] = None


class LinearRegistration:
    """
    Linear registration driver

    Setters validate eagerly and raise ConfigurationError. The per-level
    arrays are checked against each other when run() starts, before any
    image is touched.

    Usage:
        registration = LinearRegistration()
        registration.set_scale_factor([0.5, 1.0])
        registration.set_max_iter([300])
        transform = registration.run(MeanSquared(), RigidTransform(), image1, image2)
    """

    def __init__(
        self,
        config: Optional[LinearConfig] = None,
        log_context: Optional[LogContext] = None,
        device: Optional[torch.device] = None,
    ):
        config = config or LinearConfig()
        self.log_context = log_context or LogContext()
        self.logger = self.log_context.logger
        self.device = device

        self.set_max_iter(config.max_iter)
        self.set_scale_factor(config.scale_factor)
        self.set_sparsity(config.sparsity)
        self.set_smoothing_factor(config.smooth_factor)
        self.set_extent(config.kernel_extent)
        self.set_init_type(config.init_type)
        self.set_mode(config.mode)
        self.set_grad_tolerance(config.grad_tolerance)
        self.set_step_tolerance(config.step_tolerance)
        self.set_midway_resolution(config.midway_resolution)
        self.set_revert_on_regression(config.revert_on_regression)
        self.seed = int(config.seed)

        self.directions: Optional[torch.Tensor] = None
        self.log_stream: Optional[TextIO] = None
        self.midway_header: Optional[ImageHeader] = None
        self.level_reports: List[LevelReport] = []

    @classmethod
    def from_config(
        cls,
        config: Union[RegistrationConfig, LinearConfig],
        log_context: Optional[LogContext] = None,
        device: Optional[torch.device] = None,
    ) -> "LinearRegistration":
        if isinstance(config, RegistrationConfig):
            config = config.linear
        return cls(config, log_context=log_context, device=device)

    # -- configuration ----------------------------------------------------

    def set_max_iter(self, max_iter: Union[int, Sequence[int]]) -> None:
        self.max_iter = check_max_iter(max_iter)

    def set_scale_factor(self, scale_factor: Union[float, Sequence[float]]) -> None:
        self.scale_factor = check_scale_factor(scale_factor)

    def set_sparsity(self, sparsity: Union[float, Sequence[float]]) -> None:
        self.sparsity = check_sparsity(sparsity)

    def set_smoothing_factor(self, smooth_factor: float) -> None:
        self.smooth_factor = check_smooth_factor(smooth_factor)

    def set_extent(self, extent: Union[int, Sequence[int]]) -> None:
        self.kernel_extent = check_kernel_extent(extent)

    def set_init_type(self, init_type: Union[InitType, str]) -> None:
        value = init_type.value if isinstance(init_type, InitType) else init_type
        self.init_type = InitType(check_choice(value, VALID_INIT_TYPES, "initialisation type"))

    def set_mode(self, mode: Union[PreparationMode, str]) -> None:
        value = mode.value if isinstance(mode, PreparationMode) else mode
        self.mode = PreparationMode(check_choice(value, VALID_MODES, "registration mode"))

    def set_grad_tolerance(self, tolerance: float) -> None:
        self.grad_tolerance = check_tolerance(tolerance, "gradient tolerance")

    def set_step_tolerance(self, tolerance: float) -> None:
        self.step_tolerance = check_tolerance(tolerance, "step tolerance")

    def set_midway_resolution(self, resolution: float) -> None:
        self.midway_resolution = check_midway_resolution(resolution)

    def set_revert_on_regression(self, enabled: bool) -> None:
        self.revert_on_regression = bool(enabled)

    def set_directions(self, directions: Optional[torch.Tensor]) -> None:
        if directions is None:
            self.directions = None
            return
        directions = torch.as_tensor(directions, dtype=DTYPE)
        if directions.dim() != 2 or directions.shape[1] != 3 or directions.shape[0] == 0:
            raise ConfigurationError("directions must be an N x 3 matrix")
        self.directions = directions

    def set_gradient_descent_log_stream(self, stream: Optional[TextIO]) -> None:
        self.log_stream = stream

    def level_schedule(self) -> List[LevelSettings]:
        """Per-level settings after broadcasting"""
        return validate_levels(self.max_iter, self.scale_factor, self.sparsity, self.smooth_factor)

    # -- run --------------------------------------------------------------

    def run(
        self,
        metric: Metric,
        transform: LinearTransform,
        image1: Image,
        image2: Image,
        mask1: Optional[Image] = None,
        mask2: Optional[Image] = None,
    ) -> LinearTransform:
        """
        Register image1 to image2

        Args:
            metric: Similarity metric
            transform: Transform to optimise (initialised in place)
            image1: First image
            image2: Second image
            mask1: Optional boolean mask of image1
            mask2: Optional boolean mask of image2

        Returns:
            The transform, holding the final parameters
        """
        levels = self.level_schedule()
        symmetric = self.mode == PreparationMode.SYMMETRIC
        if symmetric and not transform.supports_half:
            raise ConfigurationError(
                f"symmetric registration requires a transform with a half-transform decomposition "
                f"({transform.name} has none)"
            )
        if metric.requires_directions and self.directions is None:
            raise ConfigurationError(f"the {metric.name} metric requires directions")
        if image1.header.nvolumes != image2.header.nvolumes:
            raise ConfigurationError("both images must have the same number of volumes")

        if self.device is not None:
            image1 = image1.to(device=self.device)
            image2 = image2.to(device=self.device)
            mask1 = mask1.to(device=self.device) if mask1 is not None else None
            mask2 = mask2.to(device=self.device) if mask2 is not None else None

        self.level_reports = []
        self.logger.info("=" * 60)
        self.logger.info(f"LINEAR REGISTRATION ({transform.name}, {self.mode.value}, {len(levels)} levels)")
        self.logger.info("=" * 60)

        initialise(self.init_type, image1, image2, transform)
        self.logger.debug(f"Initial transform: {transform}")

        preparation = self._create_preparation(image1, image2, transform)
        mask1_interp = NearestInterpolator(mask1) if mask1 is not None else None
        mask2_interp = NearestInterpolator(mask2) if mask2 is not None else None
        reference = None
        if self.revert_on_regression:
            reference = self._create_reference(
                metric, transform, image1, image2, mask1, mask2, mask1_interp, mask2_interp, symmetric
            )

        for settings in levels:
            message = (
                f"linear stage {settings.index + 1}/{len(levels)}: "
                f"scale factor {settings.scale_factor:g}"
            )
            if settings.sparsity > 0:
                message += f", sparsity {settings.sparsity:g}"
            self.logger.info(message)

            with self.log_context.latch(logging.WARNING):
                working = preparation.prepare(settings)

            metric_params = MetricParams(
                transform,
                working.image1,
                working.image2,
                working.template,
                symmetric=symmetric,
                sparsity=settings.sparsity,
                kernel_extent=self.kernel_extent,
                mask1=mask1,
                mask2=mask2,
                mask1_interp=mask1_interp,
                mask2_interp=mask2_interp,
                seed=self.seed + settings.index,
            )
            evaluate = Evaluate(metric, metric_params)
            if self.directions is not None:
                evaluate.set_directions(self.directions)

            start_parameters = transform.get_parameter_vector()
            optim = self.create_optimiser(evaluate, transform)
            optim.run(
                max_iterations=settings.max_iter,
                grad_tolerance=self.grad_tolerance,
                step_tolerance=self.step_tolerance,
                log_stream=self.log_stream,
            )
            if self.log_stream is not None:
                self.log_stream.write("\n\n")
                self.log_stream.flush()

            parameters = optim.state()
            start_cost, end_cost = optim.history[0], optim.value()
            reverted = False
            reference_start = reference_end = None
            if reference is not None:
                reference_start = reference.cost(start_parameters)
                reference_end = reference.cost(parameters)
                if not reference_end <= reference_start:
                    self.logger.warning(
                        f"Level {settings.index + 1} regressed at full resolution "
                        f"({reference_start:.6g} -> {reference_end:.6g}): keeping previous parameters"
                    )
                    parameters = start_parameters
                    reverted = True

            transform.set_parameter_vector(parameters)

            self.level_reports.append(LevelReport(
                level=settings.index,
                scale_factor=settings.scale_factor,
                sparsity=settings.sparsity,
                max_iter=settings.max_iter,
                start_parameters=start_parameters,
                end_parameters=transform.get_parameter_vector(),
                start_cost=start_cost,
                end_cost=end_cost,
                iterations=optim.iterations,
                evaluations=optim.function_evaluations(),
                reverted=reverted,
                reference_start_cost=reference_start,
                reference_end_cost=reference_end,
            ))
            self.logger.info(
                f"  cost {start_cost:.6g} -> {end_cost:.6g} "
                f"({optim.iterations} iterations, {metric_params.n_samples} samples)"
            )

        self.logger.info(f"Final transform:\n{transform.get_transform().numpy()}")
        return transform

    def create_optimiser(self, evaluate: Evaluate, transform: LinearTransform) -> GradientDescent:
        """Gradient descent with the transform's update rule and preconditioning"""
        optim = GradientDescent(evaluate, transform.get_gradient_descent_updator())
        optim.precondition(transform.get_optimiser_weights())
        return optim

    def _create_preparation(
        self, image1: Image, image2: Image, transform: LinearTransform
    ) -> LevelPreparation:
        if self.mode == PreparationMode.ASYMMETRIC:
            self.midway_header = None
            return AsymmetricLevelPreparation(image1, image2, self.log_context)

        # midway space from the initial half transforms; fixed for the whole run
        self.midway_header = compute_minimum_average_header(
            [image2.header, image1.header],
            resolution=self.midway_resolution,
            padding=MIDWAY_PADDING,
            transforms=[transform.get_transform_half_inverse(), transform.get_transform_half()],
        )
        self.logger.debug(f"Midway space: {self.midway_header.shape}, spacing {self.midway_header.spacing}")
        template = Image.scratch(self.midway_header, device=image1.device)
        return SymmetricLevelPreparation(image1, image2, template, self.log_context)

    def _create_reference(
        self,
        metric: Metric,
        transform: LinearTransform,
        image1: Image,
        image2: Image,
        mask1: Optional[Image],
        mask2: Optional[Image],
        mask1_interp: Optional[NearestInterpolator],
        mask2_interp: Optional[NearestInterpolator],
        symmetric: bool,
    ) -> Evaluate:
        """Dense cost on the unsmoothed full-resolution images, shared by all levels"""
        if symmetric:
            template = Image.scratch(self.midway_header, device=image1.device)
        else:
            template = image1
        metric_params = MetricParams(
            transform,
            image1,
            image2,
            template,
            symmetric=symmetric,
            kernel_extent=self.kernel_extent,
            mask1=mask1,
            mask2=mask2,
            mask1_interp=mask1_interp,
            mask2_interp=mask2_interp,
            seed=self.seed,
        )
        reference = Evaluate(metric, metric_params)
        if self.directions is not None:
            reference.set_directions(self.directions)
        return reference
