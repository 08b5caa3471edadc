"""
SYMREG Convergence Plotting

Read the gradient-descent log stream and visualise optimisation
convergence across resolution levels.

Log stream format: one block per level, blocks separated by two blank
lines (gnuplot "index" convention). Within a block, '#' lines are
headers and each row is: iteration cost step_size grad_norm p0 ... pn
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from ..utils.logging_config import get_logger

logger = get_logger("convergence")


def read_gradient_descent_log(path: Union[str, Path]) -> Dict[str, np.ndarray]:
    """
    Parse a gradient-descent log stream

    Args:
        path: Log file written by the registration driver

    Returns:
        Ordered dict "Level N" -> array [iterations, columns]
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gradient descent log not found: {path}")
    return parse_gradient_descent_log(path.read_text())


def parse_gradient_descent_log(text: str) -> Dict[str, np.ndarray]:
    """Parse log stream text into per-level arrays"""
    history: Dict[str, np.ndarray] = {}
    for block in text.split("\n\n\n"):
        rows: List[List[float]] = []
        for line in block.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            rows.append([float(v) for v in line.split()])
        if rows:
            history[f"Level {len(history) + 1}"] = np.asarray(rows)
    return history


def plot_convergence(
    loss_history: List[float],
    output_path: Optional[Union[str, Path]] = None,
    title: str = "Convergence",
    xlabel: str = "Iteration",
    ylabel: str = "Cost",
    figsize: tuple = (10, 6),
    dpi: int = 150,
) -> Optional[plt.Figure]:
    """
    Plot single cost convergence curve

    Returns:
        Figure object (if not saved) or None
    """
    fig, ax = plt.subplots(1, 1, figsize=figsize)

    ax.plot(loss_history, 'b-', linewidth=2)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.grid(True, alpha=0.3)

    min_idx = int(np.argmin(loss_history))
    min_val = loss_history[min_idx]
    ax.axhline(y=min_val, color='r', linestyle='--', alpha=0.5)
    ax.annotate(f'Min: {min_val:.6g}', xy=(min_idx, min_val),
                xytext=(10, 10), textcoords='offset points',
                fontsize=10, color='red')

    plt.tight_layout()

    if output_path:
        plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Saved: {Path(output_path).name}")
        return None

    return fig


def plot_multi_level_convergence(
    loss_history: Dict[str, Union[List[float], np.ndarray]],
    output_path: Optional[Union[str, Path]] = None,
    title: str = "Multi-Level Convergence",
    figsize: tuple = (12, 6),
    dpi: int = 150,
) -> Optional[plt.Figure]:
    """
    Plot cost across resolution levels, one curve per level

    Args:
        loss_history: Level name -> cost list, or -> log array (cost in column 1)
        output_path: Optional path to save figure
        title: Figure title
        figsize: Figure size
        dpi: DPI for saved figure

    Returns:
        Figure object (if not saved) or None
    """
    if not loss_history:
        raise ValueError("No convergence data to plot")

    fig, ax = plt.subplots(1, 1, figsize=figsize)

    n_levels = len(loss_history)
    colors = plt.cm.viridis(np.linspace(0, 1, n_levels))

    # levels keep their insertion (coarse to fine) order
    cumulative_iters = 0
    for i, (level_name, values) in enumerate(loss_history.items()):
        values = np.asarray(values, dtype=float)
        costs = values[:, 1] if values.ndim == 2 else values
        iters = np.arange(len(costs)) + cumulative_iters
        ax.plot(iters, costs, color=colors[i], linewidth=2, label=level_name)

        if i > 0:
            ax.axvline(x=cumulative_iters, color='gray', linestyle=':', alpha=0.5)

        cumulative_iters += len(costs)

    ax.set_xlabel("Cumulative Iteration")
    ax.set_ylabel("Cost")
    ax.set_title(title)
    ax.legend(loc='upper right')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if output_path:
        plt.savefig(output_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        logger.info(f"Saved: {Path(output_path).name}")
        return None

    return fig
