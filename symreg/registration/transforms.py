"""
SYMREG Linear Transforms

Rigid (6 DOF) and affine (12 DOF) transforms for symmetric registration.

Convention:
- The full transform T maps image-1 scanner coordinates to image-2
  scanner coordinates.
- The parameter vector describes the *half* transform H, which maps
  midway coordinates to image 2; H^-1 maps midway coordinates to image 1
  and T = H @ H. Half and half-inverse are both computed from the one
  parameter vector, so they are exact inverses at all times.
- Both act about a centre of rotation c: x' = A (x - c) + c + t.
"""

import math
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import torch

from ..utils.logging_config import get_logger

logger = get_logger("transforms")

DTYPE = torch.float64

# Characteristic extent (mm) used to balance rotation/linear against translation
DEFAULT_RADIUS = 50.0


# ---------------------------------------------------------------------------
# Rotation helpers
# ---------------------------------------------------------------------------

def skew(w: torch.Tensor) -> torch.Tensor:
    """Cross-product matrix [w]x (differentiable)"""
    zero = w.new_zeros(())
    return torch.stack([
        torch.stack([zero, -w[2], w[1]]),
        torch.stack([w[2], zero, -w[0]]),
        torch.stack([-w[1], w[0], zero]),
    ])


def rotation_from_vector(w: torch.Tensor) -> torch.Tensor:
    """
    Exponential map: rotation vector -> rotation matrix (Rodrigues)

    Uses a series expansion near zero so that the gradient at w = 0 is
    well defined (needed for the manifold update in the optimiser).
    """
    theta2 = (w * w).sum()
    small = theta2 < 1e-12
    safe_theta2 = torch.where(small, torch.ones_like(theta2), theta2)
    theta = torch.sqrt(safe_theta2)
    a = torch.where(small, 1.0 - theta2 / 6.0, torch.sin(theta) / theta)
    b = torch.where(small, 0.5 - theta2 / 24.0, (1.0 - torch.cos(theta)) / safe_theta2)
    k = skew(w)
    return torch.eye(3, dtype=w.dtype, device=w.device) + a * k + b * (k @ k)


def rotation_to_vector(rotation: torch.Tensor) -> torch.Tensor:
    """Logarithm map: rotation matrix -> rotation vector (angle in [0, pi])"""
    rotation = rotation.detach()
    vee = torch.stack([
        rotation[2, 1] - rotation[1, 2],
        rotation[0, 2] - rotation[2, 0],
        rotation[1, 0] - rotation[0, 1],
    ]) / 2.0  # = sin(theta) * axis
    cos = torch.clamp((torch.trace(rotation) - 1.0) / 2.0, -1.0, 1.0)
    theta = torch.acos(cos)
    sin = torch.sin(theta)

    if float(theta) < 1e-8:
        return vee
    if float(sin) > 1e-4:
        return theta / sin * vee

    # theta close to pi: axis from the symmetric part, sign from vee
    outer = ((rotation + rotation.T) / 2.0 - cos * torch.eye(3, dtype=rotation.dtype)) / (1.0 - cos)
    column = int(torch.argmax(torch.diagonal(outer)))
    axis = outer[:, column] / torch.sqrt(outer[column, column])
    if float(axis @ vee) < 0:
        axis = -axis
    return theta * axis


def matrix_sqrt(matrix: torch.Tensor, max_iterations: int = 100) -> torch.Tensor:
    """
    Principal square root of a 3x3 matrix (Denman-Beavers iteration)

    Raises:
        ValueError: If the matrix has no real principal square root
    """
    y = matrix.clone()
    z = torch.eye(matrix.shape[0], dtype=matrix.dtype)
    try:
        for _ in range(max_iterations):
            y_next = 0.5 * (y + torch.linalg.inv(z))
            z = 0.5 * (z + torch.linalg.inv(y))
            converged = float(torch.linalg.norm(y_next - y)) <= 1e-14 * float(torch.linalg.norm(y_next))
            y = y_next
            if converged:
                break
    except RuntimeError as e:
        raise ValueError("Linear part of the transform has no real square root") from e

    residual = float(torch.linalg.norm(y @ y - matrix)) / max(float(torch.linalg.norm(matrix)), 1e-30)
    if not math.isfinite(residual) or residual > 1e-8:
        raise ValueError("Linear part of the transform has no real square root")
    return y


# ---------------------------------------------------------------------------
# Parameter update rules
# ---------------------------------------------------------------------------

class LinearUpdate:
    """x <- x + delta"""

    def __call__(self, params: torch.Tensor, delta: torch.Tensor) -> torch.Tensor:
        return params + delta


class RigidUpdate:
    """
    Translation updated additively, rotation on the manifold:
    R <- exp([delta_r]x) @ R
    """

    def __call__(self, params: torch.Tensor, delta: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            translation = params[:3] + delta[:3]
            rotation = rotation_from_vector(delta[3:]) @ rotation_from_vector(params[3:])
            return torch.cat([translation, rotation_to_vector(rotation)])


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

class LinearTransform(ABC):
    """
    Abstract linear transform with half-transform decomposition

    Subclasses describe the half transform by (A, t) about the centre.
    Families that cannot be split into half transforms set
    supports_half = False and are rejected in symmetric mode.
    """

    name = "linear"
    n_params = 0
    supports_half = True

    def __init__(
        self,
        centre: Optional[torch.Tensor] = None,
        radius: float = DEFAULT_RADIUS,
    ):
        self._params = self.identity_parameters()
        self._centre = torch.zeros(3, dtype=DTYPE)
        if centre is not None:
            self._centre = torch.as_tensor(centre, dtype=DTYPE).clone()
        self.radius = float(radius)

    # -- subclass interface ------------------------------------------------

    @abstractmethod
    def identity_parameters(self) -> torch.Tensor:
        """Parameter vector of the identity transform"""

    @abstractmethod
    def half_components(
        self, params: torch.Tensor, delta: Optional[torch.Tensor] = None
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """(A, t) of the half transform at update(params, delta), differentiable in delta"""

    @abstractmethod
    def parameters_from_half(self, linear: torch.Tensor, translation: torch.Tensor) -> torch.Tensor:
        """Parameter vector of a half transform given as (A, t)"""

    @abstractmethod
    def half_linear(self, linear: torch.Tensor) -> torch.Tensor:
        """Linear part of the half transform for a full linear part"""

    @abstractmethod
    def get_optimiser_weights(self) -> torch.Tensor:
        """Per-parameter preconditioning weights"""

    @abstractmethod
    def get_gradient_descent_updator(self):
        """Update rule applying a parameter increment"""

    # -- matrices ---------------------------------------------------------

    def _compose(self, linear: torch.Tensor, translation: torch.Tensor) -> torch.Tensor:
        centre = self._centre.to(linear.device)
        offset = centre + translation - linear @ centre
        top = torch.cat([linear, offset.unsqueeze(1)], dim=1)
        bottom = torch.tensor([[0.0, 0.0, 0.0, 1.0]], dtype=linear.dtype, device=linear.device)
        return torch.cat([top, bottom], dim=0)

    def _resolve(self, params: Optional[torch.Tensor]) -> torch.Tensor:
        return self._params if params is None else params

    def half_matrix(self, params: Optional[torch.Tensor] = None, delta: Optional[torch.Tensor] = None) -> torch.Tensor:
        """4x4 half transform (midway -> image 2)"""
        return self._compose(*self.half_components(self._resolve(params), delta))

    def half_inverse_matrix(self, params: Optional[torch.Tensor] = None, delta: Optional[torch.Tensor] = None) -> torch.Tensor:
        """4x4 inverse half transform (midway -> image 1)"""
        return torch.linalg.inv(self.half_matrix(params, delta))

    def full_matrix(self, params: Optional[torch.Tensor] = None, delta: Optional[torch.Tensor] = None) -> torch.Tensor:
        """4x4 full transform (image 1 -> image 2)"""
        half = self.half_matrix(params, delta)
        return half @ half

    def get_transform_half(self) -> torch.Tensor:
        return self.half_matrix().detach().clone()

    def get_transform_half_inverse(self) -> torch.Tensor:
        return self.half_inverse_matrix().detach().clone()

    def get_transform(self) -> torch.Tensor:
        return self.full_matrix().detach().clone()

    def set_transform(self, matrix: torch.Tensor) -> None:
        """
        Set parameters from a full 4x4 (or 3x4) transform matrix

        The half transform is the principal square root of the full one.
        """
        matrix = torch.as_tensor(matrix, dtype=DTYPE)
        if tuple(matrix.shape) not in ((4, 4), (3, 4)):
            raise ValueError(f"Transform matrix must be 4x4 or 3x4, got {tuple(matrix.shape)}")
        linear = matrix[:3, :3]
        if abs(float(torch.linalg.det(linear))) < 1e-12:
            raise ValueError("Transform matrix has a singular linear part")

        translation = matrix[:3, 3] - self._centre + linear @ self._centre
        half = self.half_linear(linear)
        half_translation = torch.linalg.solve(half + torch.eye(3, dtype=DTYPE), translation)
        self._params = self.parameters_from_half(half, half_translation)

    # -- parameters -------------------------------------------------------

    def get_parameter_vector(self) -> torch.Tensor:
        return self._params.clone()

    def set_parameter_vector(self, params: torch.Tensor) -> None:
        params = torch.as_tensor(params, dtype=DTYPE).detach().flatten().cpu()
        if params.numel() != self.n_params:
            raise ValueError(
                f"{self.name} transform expects {self.n_params} parameters, got {params.numel()}"
            )
        self._params = params.clone()

    def get_centre(self) -> torch.Tensor:
        return self._centre.clone()

    def set_centre(self, centre: torch.Tensor) -> None:
        """Move the centre of rotation, keeping the mapping unchanged"""
        matrix = self.get_transform()
        self._centre = torch.as_tensor(centre, dtype=DTYPE).clone()
        self.set_transform(matrix)

    def set_radius(self, radius: float) -> None:
        if radius <= 0:
            raise ValueError(f"Transform radius must be positive, got {radius}")
        self.radius = float(radius)

    def __repr__(self) -> str:
        values = ", ".join(f"{v:.4g}" for v in self._params.tolist())
        return f"{self.__class__.__name__}(params=[{values}])"


class RigidTransform(LinearTransform):
    """
    Rigid transform (6 DOF)

    Parameters: half translation (3), half rotation vector (3).
    """

    name = "rigid"
    n_params = 6

    def identity_parameters(self) -> torch.Tensor:
        return torch.zeros(6, dtype=DTYPE)

    def half_components(self, params, delta=None):
        translation = params[:3]
        rotation = rotation_from_vector(params[3:])
        if delta is not None:
            translation = translation + delta[:3]
            rotation = rotation_from_vector(delta[3:]) @ rotation
        return rotation, translation

    def half_inverse_matrix(self, params=None, delta=None):
        rotation, translation = self.half_components(self._resolve(params), delta)
        inverse = rotation.T
        return self._compose(inverse, -(inverse @ translation))

    def half_linear(self, linear):
        u, _, vh = torch.linalg.svd(linear)
        rotation = u @ vh
        if float(torch.linalg.det(rotation)) < 0:
            raise ValueError("Rigid transform cannot represent a reflection")
        if float(torch.linalg.norm(rotation - linear)) > 1e-4:
            logger.warning("Non-rigid matrix given to rigid transform: using its rotation part")
        return rotation_from_vector(rotation_to_vector(rotation) / 2.0)

    def parameters_from_half(self, linear, translation):
        return torch.cat([translation, rotation_to_vector(linear)]).to(DTYPE)

    def get_optimiser_weights(self) -> torch.Tensor:
        rotation = 1.0 / self.radius ** 2
        return torch.tensor([1.0, 1.0, 1.0, rotation, rotation, rotation], dtype=DTYPE)

    def get_gradient_descent_updator(self) -> RigidUpdate:
        return RigidUpdate()

    def rotation_angle(self) -> float:
        """Rotation angle of the full transform in degrees"""
        return math.degrees(2.0 * float(torch.linalg.norm(self._params[3:])))


class AffineTransform(LinearTransform):
    """
    Affine transform (12 DOF)

    Parameters: row-major 3x4 matrix [A | t] of the half transform.
    """

    name = "affine"
    n_params = 12

    def identity_parameters(self) -> torch.Tensor:
        return torch.eye(3, 4, dtype=DTYPE).flatten()

    def half_components(self, params, delta=None):
        if delta is not None:
            params = params + delta
        matrix = params.view(3, 4)
        return matrix[:, :3], matrix[:, 3]

    def half_linear(self, linear):
        return matrix_sqrt(linear)

    def parameters_from_half(self, linear, translation):
        return torch.cat([linear, translation.unsqueeze(1)], dim=1).flatten().to(DTYPE)

    def get_optimiser_weights(self) -> torch.Tensor:
        linear = 1.0 / self.radius ** 2
        return torch.tensor([linear, linear, linear, 1.0] * 3, dtype=DTYPE)

    def get_gradient_descent_updator(self) -> LinearUpdate:
        return LinearUpdate()


TRANSFORMS = {
    "rigid": RigidTransform,
    "affine": AffineTransform,
}


def create_transform(name: str, **kwargs) -> LinearTransform:
    """Create a transform by name ('rigid' or 'affine')"""
    key = name.lower()
    if key not in TRANSFORMS:
        raise ValueError(f"Unknown transform type: {name}. Must be one of {list(TRANSFORMS)}")
    return TRANSFORMS[key](**kwargs)
