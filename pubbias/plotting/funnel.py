from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

from pubbias.analysis.meta_regression import MetaRegressionResult
from pubbias.exceptions import MissingModeratorError
from pubbias.plotting import plot_config


def funnel_contours(
    pooled: float, precision: np.ndarray, levels: tuple[float, ...] = (0.90, 0.95, 0.99)
) -> dict[float, tuple[np.ndarray, np.ndarray]]:
    """Pseudo-confidence limits pooled +/- z / precision for each confidence level."""
    contours = {}
    for level in levels:
        z = scipy_stats.norm.ppf(1 - (1 - level) / 2)
        contours[level] = (pooled - z / precision, pooled + z / precision)
    return contours


def plot_funnel(
    df: pd.DataFrame,
    pooled: float | MetaRegressionResult,
    yi: str = "yi",
    sei: str = "sei",
    ax: plt.Axes = None,
    levels: tuple[float, ...] = (0.90, 0.95, 0.99),
    shade_colours: tuple[str, ...] = ("white", "0.85", "0.7"),
    back_colour: str = "0.95",
    xlabel: str = "Effect size",
    title: Optional[str] = None,
    figsize: tuple[int, int] = (7, 6),
    dpi: int = 150,
) -> tuple[plt.Figure, plt.Axes]:
    """
    Funnel plot of effect sizes against precision (1 / sei).

    Args:
        df (pd.DataFrame): observations with effect size and standard error columns.
        pooled (float | MetaRegressionResult): the reference effect. A fitted
            intercept-only model contributes its intercept.
        levels (tuple[float]): confidence levels of the pseudo-confidence contours,
            shaded from the innermost outwards.

    Returns:
        tuple[plt.Figure, plt.Axes]
    """
    missing = [col for col in (yi, sei) if col not in df.columns]
    if missing:
        raise MissingModeratorError(missing, "funnel")
    if isinstance(pooled, MetaRegressionResult):
        pooled = float(pooled.coefficient("intrcpt")["estimate"])

    data = df[[yi, sei]].dropna()
    effects = data[yi].to_numpy(dtype=float)
    precision = 1 / data[sei].to_numpy(dtype=float)

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize, dpi=dpi)
    else:
        fig = ax.figure
    ax.set_facecolor(back_colour)

    # contours, from the widest to the narrowest so the inner ones sit on top
    prec_grid = np.linspace(precision.max() * 1.05, max(precision.min() * 0.5, 1e-6), 300)
    contours = funnel_contours(pooled, prec_grid, levels)
    for level, colour in sorted(
        zip(levels, shade_colours), key=lambda lc: lc[0], reverse=True
    ):
        lower, upper = contours[level]
        ax.fill_betweenx(
            prec_grid, lower, upper, color=colour, label=f"{100 * level:g}% limits", zorder=1
        )
        ax.plot(lower, prec_grid, color="0.4", linewidth=0.6, zorder=2)
        ax.plot(upper, prec_grid, color="0.4", linewidth=0.6, zorder=2)

    ax.axvline(
        pooled,
        color=plot_config.POOLED_COLOUR,
        linestyle="--",
        linewidth=1.5,
        label=f"Pooled estimate ({pooled:.3f})",
        zorder=3,
    )
    ax.scatter(
        effects, precision, facecolor="black", edgecolor="white", s=25, zorder=4, label="Observations"
    )

    x_range = effects.max() - effects.min()
    pad = 0.15 * x_range if x_range > 0 else 1
    ax.set_xlim(min(effects.min(), pooled) - pad, max(effects.max(), pooled) + pad)
    ax.set_ylim(prec_grid.min(), prec_grid.max())
    ax.set_xlabel(xlabel)
    ax.set_ylabel("Precision (1 / SE)")
    if title:
        ax.set_title(title)
    ax.legend(loc="lower right", fontsize=9)
    fig.tight_layout()
    return fig, ax
