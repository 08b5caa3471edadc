"""
SYMREG Similarity Metrics

Metric context (MetricParams), similarity metrics and the Evaluate
function object consumed by the gradient-descent optimiser.

Sampling geometry:
- symmetric: template points p are mapped to image 1 with H^-1 and to
  image 2 with H (H = half transform)
- asymmetric: the template is image 1's grid; p is compared with image 2
  at T p (T = H @ H)

Gradients are computed by autograd with respect to the transform's
update increment delta at delta = 0, so they are consistent with the
transform's own update rule (exponential map for rotations).
"""

import math
from typing import Dict, NamedTuple, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F
from deepali.losses import functional as L

from ..data.image import Image
from ..preprocessing.interpolation import LinearInterpolator, NearestInterpolator
from ..utils.logging_config import get_logger
from .transforms import LinearTransform, DTYPE

logger = get_logger("metrics")

# Sparse sampling never keeps fewer points than this (unless the grid is smaller)
MIN_SAMPLES = 1000

# Concentration of the spherical interpolation kernel for orientation metrics
ORIENTATION_SHARPNESS = 10.0

# Local contrast (relative to the global standard deviation) below which a
# voxel is down-weighted in the local cross-correlation
CONTRAST_THRESHOLD = 0.1


class Samples(NamedTuple):
    """Values of both images at the template points"""
    values1: torch.Tensor    # [P, V]
    values2: torch.Tensor    # [P, V]
    valid: torch.Tensor      # [P] inside both images and any mask
    linear1: torch.Tensor    # [3, 3] linear part of template -> image 1
    linear2: torch.Tensor    # [3, 3] linear part of template -> image 2


def _apply(matrix: torch.Tensor, points: torch.Tensor) -> torch.Tensor:
    return points @ matrix[:3, :3].T + matrix[:3, 3]


class MetricParams:
    """
    Metric context for one resolution level

    Binds the transform, the level-scoped images, masks, sparsity and
    kernel extent. Sample points are fixed at construction, so repeated
    evaluations within a level see the same voxels.
    """

    def __init__(
        self,
        transform: LinearTransform,
        image1: Image,
        image2: Image,
        template: Image,
        symmetric: bool = True,
        sparsity: float = 0.0,
        kernel_extent: Sequence[int] = (1, 1, 1),
        mask1: Optional[Image] = None,
        mask2: Optional[Image] = None,
        mask1_interp: Optional[NearestInterpolator] = None,
        mask2_interp: Optional[NearestInterpolator] = None,
        seed: int = 0,
    ):
        if not 0.0 <= sparsity <= 1.0:
            raise ValueError(f"Sparsity must be between 0.0 and 1.0, got {sparsity}")
        extent = [int(e) for e in kernel_extent]
        if not extent or any(e < 1 for e in extent):
            raise ValueError(f"Kernel extent values must be >= 1, got {list(kernel_extent)}")
        # one half-width per spatial axis: short lists repeat their last value, extra entries are ignored
        extent = [extent[min(axis, len(extent) - 1)] for axis in range(3)]
        if image1.header.nvolumes != image2.header.nvolumes:
            raise ValueError(
                f"Images have different numbers of volumes: {image1.header.nvolumes} vs {image2.header.nvolumes}"
            )

        self.transform = transform
        self.image1 = image1
        self.image2 = image2
        self.template = template
        self.symmetric = symmetric
        self.sparsity = float(sparsity)
        self.kernel_extent = tuple(extent)
        self.seed = seed
        self.cache: Dict[str, torch.Tensor] = {}

        self.interp1 = LinearInterpolator(image1.to(dtype=DTYPE))
        self.interp2 = LinearInterpolator(image2.to(dtype=DTYPE))

        self.mask1 = mask1
        self.mask2 = mask2
        self.mask1_interp = mask1_interp or (NearestInterpolator(mask1) if mask1 is not None else None)
        self.mask2_interp = mask2_interp or (NearestInterpolator(mask2) if mask2 is not None else None)

        voxels = template.header.voxel_grid().reshape(-1, 3)
        self.grid_points = template.header.voxel_to_scanner(voxels).to(image1.device)
        self.indices = self._select_indices(self.grid_points.shape[0])

    def _select_indices(self, n: int) -> Optional[torch.Tensor]:
        if self.sparsity == 0.0:
            return None
        keep = max(int(round(n * (1.0 - self.sparsity))), min(MIN_SAMPLES, n))
        if keep >= n:
            return None
        generator = torch.Generator().manual_seed(self.seed)
        indices = torch.randperm(n, generator=generator)[:keep]
        return indices.sort().values.to(self.grid_points.device)

    @property
    def n_samples(self) -> int:
        return self.grid_points.shape[0] if self.indices is None else self.indices.numel()

    @property
    def sample_points(self) -> torch.Tensor:
        if self.indices is None:
            return self.grid_points
        return self.grid_points[self.indices]

    @property
    def selection(self) -> torch.Tensor:
        """Boolean [N] over the template grid: voxels contributing to the metric"""
        if self.indices is None:
            return torch.ones(self.grid_points.shape[0], dtype=torch.bool, device=self.grid_points.device)
        selected = torch.zeros(self.grid_points.shape[0], dtype=torch.bool, device=self.grid_points.device)
        selected[self.indices] = True
        return selected

    def mappings(
        self, params: torch.Tensor, delta: Optional[torch.Tensor] = None
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """4x4 matrices taking template scanner points into image 1 and image 2"""
        if self.symmetric:
            return (
                self.transform.half_inverse_matrix(params, delta),
                self.transform.half_matrix(params, delta),
            )
        identity = torch.eye(4, dtype=DTYPE)
        return identity, self.transform.full_matrix(params, delta)

    def sample(
        self,
        params: torch.Tensor,
        delta: Optional[torch.Tensor] = None,
        dense: bool = False,
    ) -> Samples:
        """Sample both images at the template points (all grid points if dense)"""
        points = self.grid_points if dense else self.sample_points
        matrix1, matrix2 = self.mappings(params, delta)
        matrix1 = matrix1.to(points.device)
        matrix2 = matrix2.to(points.device)

        points1 = _apply(matrix1, points)
        points2 = _apply(matrix2, points)
        values1, inside1 = self.interp1(points1)
        values2, inside2 = self.interp2(points2)

        valid = inside1 & inside2
        if self.mask1_interp is not None:
            valid &= self.mask1_interp.contains(points1)
        if self.mask2_interp is not None:
            valid &= self.mask2_interp.contains(points2)
        return Samples(values1, values2, valid, matrix1[:3, :3], matrix2[:3, :3])


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class Metric:
    """Base similarity metric: returns a differentiable cost, or None if nothing overlaps"""

    name = "metric"
    requires_directions = False

    def __call__(
        self,
        params: MetricParams,
        x: torch.Tensor,
        delta: Optional[torch.Tensor] = None,
        directions: Optional[torch.Tensor] = None,
    ) -> Optional[torch.Tensor]:
        raise NotImplementedError


class MeanSquared(Metric):
    """Mean squared intensity difference"""

    name = "mean_squared"

    def __call__(self, params, x, delta=None, directions=None):
        samples = params.sample(x, delta)
        if not bool(samples.valid.any()):
            return None
        return L.mse_loss(samples.values1[samples.valid], samples.values2[samples.valid])


class CrossCorrelation(Metric):
    """
    Negative global normalised cross-correlation

    Signed, so anti-correlated intensities are penalised. deepali's
    ncc_loss is sign-blind (1 - NCC^2) and is not used here.
    """

    name = "cross_correlation"

    def __call__(self, params, x, delta=None, directions=None):
        samples = params.sample(x, delta)
        if int(samples.valid.sum()) < 2:
            return None
        a = samples.values1[samples.valid]
        b = samples.values2[samples.valid]
        a = a - a.mean(dim=0)
        b = b - b.mean(dim=0)
        denominator = torch.sqrt((a * a).sum() * (b * b).sum()).clamp(min=1e-12)
        return -(a * b).sum() / denominator


class LocalCrossCorrelation(Metric):
    """
    Negative weighted mean of the local normalised cross-correlation

    Local statistics use a (2e+1)^3 box over the template grid, where e is
    the kernel extent, restricted to valid voxels. Evaluated densely;
    sparsity only restricts which voxels contribute to the mean.

    Each voxel is weighted by its local contrast, w = P / (P + eps) with
    P the product of the local variances and eps set by CONTRAST_THRESHOLD
    against the global variances. The weights are computed once per metric
    context, at the first evaluated parameters, so the cost is a fixed
    function of the parameters within a level. Since LNCC <= 1 everywhere,
    the cost is bounded below by -1, reached when both samplings agree.
    """

    name = "local_cross_correlation"

    def __init__(self, contrast_threshold: float = CONTRAST_THRESHOLD):
        self.contrast_threshold = contrast_threshold

    def local_statistics(self, params: MetricParams, samples: Samples) -> Tuple[torch.Tensor, torch.Tensor]:
        """LNCC and local variance product per template voxel, both [N, V]"""
        shape = params.template.header.spatial_shape
        n_volumes = samples.values1.shape[1]

        def to_grid(values):
            return values.transpose(0, 1).reshape((1, n_volumes) + tuple(shape))

        def to_points(grid):
            return grid[0].reshape(n_volumes, -1).transpose(0, 1)

        weight = samples.valid.to(samples.values1.dtype).unsqueeze(1)
        a = to_grid(samples.values1 * weight)
        b = to_grid(samples.values2 * weight)
        m = to_grid(weight.expand(-1, n_volumes))

        kernel = tuple(2 * e + 1 for e in params.kernel_extent)
        padding = tuple(params.kernel_extent)

        def box(t):
            return F.avg_pool3d(t, kernel, stride=1, padding=padding)

        count = box(m)
        inside = count > 0
        count = torch.where(inside, count, torch.ones_like(count))
        mean_a = box(a) / count
        mean_b = box(b) / count
        var_a = (box(a * a) / count - mean_a ** 2).clamp(min=0)
        var_b = (box(b * b) / count - mean_b ** 2).clamp(min=0)
        cov = box(a * b) / count - mean_a * mean_b
        variance = torch.where(inside, var_a * var_b, torch.zeros_like(count))
        lncc = cov / torch.sqrt(variance.clamp(min=1e-30))
        return to_points(lncc), to_points(variance)

    def contrast_weights(self, variance: torch.Tensor, samples: Samples, contributing: torch.Tensor) -> torch.Tensor:
        """Soft threshold on the local variance product, relative to the global one"""
        a = samples.values1[contributing]
        b = samples.values2[contributing]
        global_variance = ((a - a.mean(dim=0)) ** 2).mean(dim=0) * ((b - b.mean(dim=0)) ** 2).mean(dim=0)
        eps = (self.contrast_threshold ** 4) * global_variance
        return variance / (variance + eps).clamp(min=1e-30)

    def __call__(self, params, x, delta=None, directions=None):
        samples = params.sample(x, delta, dense=True)
        contributing = samples.valid & params.selection
        if not bool(contributing.any()):
            return None

        lncc, variance = self.local_statistics(params, samples)
        weights = params.cache.get(self.name)
        if weights is None:
            with torch.no_grad():
                values = Samples(*(t.detach() for t in samples))
                weights = self.contrast_weights(variance.detach(), values, contributing)
            params.cache[self.name] = weights

        weights = weights * contributing.unsqueeze(1).to(weights.dtype)
        total = weights.sum()
        if float(total) <= 0:
            return None
        return -(weights * lncc).sum() / total


class OrientationMeanSquared(Metric):
    """
    Mean squared difference of orientation-dependent amplitudes

    Images are 4-D with one volume per direction. Directions are
    reoriented by the linear part of each mapping and amplitudes are
    re-interpolated on the sphere before comparison.
    """

    name = "orientation_mean_squared"
    requires_directions = True

    def __init__(self, sharpness: float = ORIENTATION_SHARPNESS):
        self.sharpness = sharpness

    def reorient(self, values: torch.Tensor, linear: torch.Tensor, directions: torch.Tensor) -> torch.Tensor:
        """Amplitudes along template directions from amplitudes along the image's directions"""
        directions = directions.to(dtype=linear.dtype, device=linear.device)
        mapped = directions @ linear.T
        mapped = mapped / torch.linalg.norm(mapped, dim=1, keepdim=True)
        cosines = mapped @ directions.T  # [template dir, image dir]
        weights = torch.exp(self.sharpness * (cosines ** 2 - 1.0))
        weights = weights / weights.sum(dim=1, keepdim=True)
        return values @ weights.to(values.dtype).T

    def __call__(self, params, x, delta=None, directions=None):
        if directions is None:
            raise ValueError("Orientation metric requires directions (see Evaluate.set_directions)")
        samples = params.sample(x, delta)
        if samples.values1.shape[1] != directions.shape[0]:
            raise ValueError(
                f"Number of volumes ({samples.values1.shape[1]}) does not match "
                f"number of directions ({directions.shape[0]})"
            )
        if not bool(samples.valid.any()):
            return None
        values1 = self.reorient(samples.values1, samples.linear1, directions)
        values2 = self.reorient(samples.values2, samples.linear2, directions)
        return L.mse_loss(values1[samples.valid], values2[samples.valid])


METRICS = {
    MeanSquared.name: MeanSquared,
    CrossCorrelation.name: CrossCorrelation,
    LocalCrossCorrelation.name: LocalCrossCorrelation,
    OrientationMeanSquared.name: OrientationMeanSquared,
}


def get_metric(name: str) -> Metric:
    """Create a metric by name"""
    key = name.lower()
    if key not in METRICS:
        raise ValueError(f"Unknown metric: {name}. Must be one of {list(METRICS)}")
    return METRICS[key]()


# ---------------------------------------------------------------------------
# Evaluate wrapper
# ---------------------------------------------------------------------------

class Evaluate:
    """
    Cost and gradient of a metric as a function of the parameter vector

    The gradient is with respect to the update increment at x, matching
    the transform's gradient-descent update rule.
    """

    def __init__(self, metric: Metric, params: MetricParams):
        self.metric = metric
        self.params = params
        self.directions: Optional[torch.Tensor] = None
        self.evaluations = 0

    def init(self) -> torch.Tensor:
        """Starting point: the transform's current parameters"""
        return self.params.transform.get_parameter_vector()

    def size(self) -> int:
        return self.params.transform.n_params

    def set_directions(self, directions: torch.Tensor) -> None:
        directions = torch.as_tensor(directions, dtype=DTYPE)
        if directions.dim() != 2 or directions.shape[1] != 3:
            raise ValueError(f"Directions must be an N x 3 matrix, got {tuple(directions.shape)}")
        norms = torch.linalg.norm(directions, dim=1, keepdim=True)
        if bool((norms < 1e-12).any()):
            raise ValueError("Directions must not contain zero vectors")
        self.directions = directions / norms

    def cost(self, x: torch.Tensor) -> float:
        """Cost only, without gradient"""
        with torch.no_grad():
            value = self.metric(self.params, torch.as_tensor(x, dtype=DTYPE), None, self.directions)
        self.evaluations += 1
        if value is None:
            return math.inf
        return float(value)

    def __call__(self, x: torch.Tensor) -> Tuple[float, torch.Tensor]:
        x = torch.as_tensor(x, dtype=DTYPE).detach()
        delta = torch.zeros_like(x, requires_grad=True)
        self.evaluations += 1

        value = self.metric(self.params, x, delta, self.directions)
        if value is None or not bool(torch.isfinite(value)):
            return math.inf, torch.zeros_like(x)

        value.backward()
        if delta.grad is None:
            return float(value.detach()), torch.zeros_like(x)
        gradient = delta.grad.detach().to(DTYPE)
        if not bool(torch.isfinite(gradient).all()):
            logger.warning("Non-finite metric gradient; treating this point as invalid")
            return math.inf, torch.zeros_like(x)
        return float(value.detach()), gradient
