import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from pubbias.utils import config, file_ops

logger = logging.getLogger(__name__)


def save_fig(
    fig: plt.Figure,
    fig_name: str,
    run_key: str = None,
    fig_dir: Path = None,
    dpi: int = 300,
) -> Path:
    """Save a figure as png, suffixed with a run key or timestamp."""
    fig_dir = Path(fig_dir) if fig_dir is not None else config.fig_dir
    fig_dir.mkdir(parents=True, exist_ok=True)
    run_key = run_key if run_key else file_ops.get_now_timestamp_formatted()

    fig_fp = fig_dir / f"{fig_name}_{run_key}.png"
    fig.savefig(fig_fp, dpi=dpi, bbox_inches="tight")
    logger.info(f"Figure saved to {fig_fp}")
    return fig_fp


def label_panels(
    axes, fontsize: int = 14, xy: tuple[float, float] = (0.02, 0.98), lowercase: bool = False
) -> list[str]:
    """Label the panels of a multi-panel figure in reading order (A, B, ...) at the top left."""
    first = ord("a") if lowercase else ord("A")
    labels = []
    for i, ax in enumerate(np.ravel(axes)):
        label = chr(first + i)
        ax.text(
            *xy,
            label,
            transform=ax.transAxes,
            fontsize=fontsize,
            fontweight="bold",
            ha="left",
            va="top",
        )
        labels.append(label)
    return labels


def compute_point_weights(vi: np.ndarray, weight_pt_by: str | np.ndarray = "vinv") -> np.ndarray:
    """Compute marker sizes scaled to precision, normalised to the range 1-31."""
    vi = np.asarray(vi, dtype=float)
    if isinstance(weight_pt_by, str) and weight_pt_by == "seinv":
        weights = 1 / np.sqrt(vi)
    elif isinstance(weight_pt_by, str) and weight_pt_by == "vinv":
        weights = 1 / vi
    elif isinstance(weight_pt_by, (list, np.ndarray)):
        weights = np.asarray(weight_pt_by, dtype=float)
    else:
        weights = np.ones_like(vi)

    if len(weights) == 0:
        return weights
    min_w, max_w = weights.min(), weights.max()
    if max_w - min_w > np.finfo(float).eps:
        return 30 * (weights - min_w) / (max_w - min_w) + 1
    return np.ones_like(weights) * 20


def get_xs_and_prediction_limits(
    xi: np.ndarray,
    prediction_limits: tuple[float, float] = None,
    num_prediction_points: int = 200,
) -> tuple[np.ndarray, tuple[float, float]]:
    """x values for the regression line, padded 10% beyond the observed range unless limits are given."""
    range_xi = np.max(xi) - np.min(xi)
    if prediction_limits is None:
        prediction_limits = (np.min(xi) - 0.1 * range_xi, np.max(xi) + 0.1 * range_xi)
    xs = np.linspace(prediction_limits[0], prediction_limits[1], num_prediction_points)
    return xs, prediction_limits
