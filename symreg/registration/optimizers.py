"""
SYMREG Optimizers

Preconditioned gradient descent with adaptive step size for linear
registration.

Behavior:
- Direction: -w * g / ||w * g|| (w = per-parameter preconditioning weights)
- Adaptive step size: up=3.0x on accept, down=0.1x on reject
- A step is accepted only on a strict decrease of the cost; a rejected
  step leaves the state unchanged
- Stops on max iterations, preconditioned gradient norm below
  grad_tolerance, or step size below step_tolerance
"""

import math
from typing import Callable, List, Optional, TextIO, Tuple

import torch

from ..utils.logging_config import get_logger
from .transforms import DTYPE, LinearUpdate

logger = get_logger("optimizers")


class GradientDescent:
    """
    Gradient descent over a cost/gradient function object

    Usage:
        optim = GradientDescent(evaluate, transform.get_gradient_descent_updator())
        optim.precondition(transform.get_optimiser_weights())
        optim.run(max_iterations=300, grad_tolerance=1e-6, step_tolerance=1e-10)
        params = optim.state()
    """

    def __init__(
        self,
        function: Callable[[torch.Tensor], Tuple[float, torch.Tensor]],
        update: Optional[Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = None,
        step_size: float = 1.0,
        step_size_upfactor: float = 3.0,
        step_size_downfactor: float = 0.1,
    ):
        """
        Args:
            function: Object with init() -> x0 and __call__(x) -> (cost, gradient)
            update: Update rule (x, delta) -> new x (LinearUpdate if None)
            step_size: Initial step length along the normalised direction
            step_size_upfactor: Step size multiplier after an accepted step
            step_size_downfactor: Step size multiplier after a rejected step
        """
        if step_size <= 0:
            raise ValueError(f"Initial step size must be positive, got {step_size}")
        if step_size_upfactor < 1.0 or not 0.0 < step_size_downfactor < 1.0:
            raise ValueError("Step size factors must satisfy up >= 1 and 0 < down < 1")

        self.function = function
        self.update = update or LinearUpdate()
        self.initial_step_size = step_size
        self.step_size_upfactor = step_size_upfactor
        self.step_size_downfactor = step_size_downfactor

        self.weights: Optional[torch.Tensor] = None
        self.x: Optional[torch.Tensor] = None
        self.f = math.inf
        self.g: Optional[torch.Tensor] = None
        self.step_size = step_size
        self.iterations = 0
        self.accepted = 0
        self.history: List[float] = []
        self._evaluations = 0

    def precondition(self, weights: torch.Tensor) -> None:
        """Set per-parameter preconditioning weights (all must be positive)"""
        weights = torch.as_tensor(weights, dtype=DTYPE).flatten()
        if bool((weights <= 0).any()):
            raise ValueError("Preconditioning weights must be positive")
        self.weights = weights

    def _evaluate(self, x: torch.Tensor) -> Tuple[float, torch.Tensor]:
        self._evaluations += 1
        return self.function(x)

    def _preconditioned(self, gradient: torch.Tensor) -> torch.Tensor:
        if self.weights is None:
            return gradient
        if self.weights.numel() != gradient.numel():
            raise ValueError(
                f"Preconditioning weights ({self.weights.numel()}) do not match "
                f"number of parameters ({gradient.numel()})"
            )
        return self.weights * gradient

    def _write_row(self, log_stream: Optional[TextIO], grad_norm: float) -> None:
        if log_stream is None:
            return
        values = [self.f, self.step_size, grad_norm] + self.x.tolist()
        log_stream.write(f"{self.iterations} " + " ".join(f"{v:.10g}" for v in values) + "\n")

    def run(
        self,
        max_iterations: int = 1000,
        grad_tolerance: float = 1e-6,
        step_tolerance: float = 1e-10,
        log_stream: Optional[TextIO] = None,
    ) -> torch.Tensor:
        """
        Optimise from function.init()

        Args:
            max_iterations: Maximum number of steps (accepted or rejected)
            grad_tolerance: Stop when the preconditioned gradient norm falls below
            step_tolerance: Stop when the step size falls below
            log_stream: Optional text sink for per-iteration diagnostics

        Returns:
            Final parameter vector
        """
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")

        self.x = torch.as_tensor(self.function.init(), dtype=DTYPE).clone()
        self.f, self.g = self._evaluate(self.x)
        self.step_size = self.initial_step_size
        self.iterations = 0
        self.accepted = 0
        self.history = [self.f]

        if log_stream is not None:
            n = self.x.numel()
            log_stream.write(
                "# iteration cost step_size grad_norm " + " ".join(f"p{i}" for i in range(n)) + "\n"
            )

        direction = self._preconditioned(self.g)
        grad_norm = float(torch.linalg.norm(direction))
        self._write_row(log_stream, grad_norm)

        reason = "max iterations"
        while self.iterations < max_iterations:
            if not math.isfinite(self.f):
                reason = "no valid cost"
                break
            if grad_norm < grad_tolerance or grad_norm == 0.0:
                reason = "gradient tolerance"
                break
            if self.step_size < step_tolerance:
                reason = "step tolerance"
                break

            self.iterations += 1
            candidate = self.update(self.x, -self.step_size * direction / grad_norm)
            f_new, g_new = self._evaluate(candidate)

            if f_new < self.f:
                self.x, self.f, self.g = candidate, f_new, g_new
                self.accepted += 1
                self.step_size *= self.step_size_upfactor
                direction = self._preconditioned(self.g)
                grad_norm = float(torch.linalg.norm(direction))
            else:
                self.step_size *= self.step_size_downfactor

            self.history.append(self.f)
            self._write_row(log_stream, grad_norm)

        logger.debug(
            f"Gradient descent stopped ({reason}) after {self.iterations} iterations, "
            f"{self.accepted} accepted, cost={self.f:.6g}"
        )
        return self.state()

    def state(self) -> torch.Tensor:
        return self.x.clone()

    def value(self) -> float:
        return self.f

    def gradient(self) -> torch.Tensor:
        return self.g.clone()

    def gradient_norm(self) -> float:
        return float(torch.linalg.norm(self._preconditioned(self.g)))

    def function_evaluations(self) -> int:
        return self._evaluations
