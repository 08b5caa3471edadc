"""SYMREG Visualization Module"""

from .convergence import read_gradient_descent_log, parse_gradient_descent_log, plot_convergence, plot_multi_level_convergence

__all__ = [
    "read_gradient_descent_log",
    "parse_gradient_descent_log",
    "plot_convergence",
    "plot_multi_level_convergence",
]
