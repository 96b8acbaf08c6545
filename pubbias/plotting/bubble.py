# general
from dataclasses import dataclass
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.lines import Line2D

# custom
from pubbias.analysis.meta_regression import MetaRegressionResult
from pubbias.exceptions import MissingModeratorError
from pubbias.plotting import plot_config, plot_utils


@dataclass
class BubbleConfig:
    figsize: tuple[int, int] = (8, 6)
    dpi: int = 150
    title: str = None
    xlabel: str = None
    ylabel: str = "Effect size"
    legend_loc: str = "best"
    point_size: str = "vinv"
    colour_by: str = "study_id"
    point_border_colour: str = "black"
    point_alpha: float = 0.7
    line_colour: tuple | str = plot_config.MODEL_COLOUR
    ci_colour: str = "lightblue"
    pi_colour: str = "lightblue"
    refline: Optional[float] = 0
    show_prediction_interval: bool = True
    max_legend_groups: int = 12
    legend_fontsize: int = 9


class BubblePlotter:
    """
    Bubble plot of observed effect sizes against one moderator of a fitted model.

    Marker area scales with precision, markers are coloured by study, and the fitted
    line (other moderators held at their means) is drawn with its confidence band
    and, optionally, its prediction band.
    """

    def __init__(
        self,
        result: MetaRegressionResult,
        moderator: str,
        fig: plt.Figure = None,
        ax: plt.Axes = None,
        yi: str = "yi",
        vi: str = "vi",
        prediction_limits: tuple[float, float] = None,
        config: Optional[BubbleConfig] = None,
    ):
        if moderator not in result.term_names:
            raise MissingModeratorError([moderator], result.spec.name)
        self.result = result
        self.moderator = moderator
        self.config = config or BubbleConfig()
        self.fig = fig
        self.ax = ax
        data = result.data
        self.xi = data[moderator].to_numpy(dtype=float)
        self.yi = data[yi].to_numpy(dtype=float)
        self.vi = data[vi].to_numpy(dtype=float)
        self.groups = (
            data[self.config.colour_by].astype(str).to_numpy()
            if self.config.colour_by in data.columns
            else None
        )
        self.xs, self.prediction_limits = plot_utils.get_xs_and_prediction_limits(
            self.xi, prediction_limits
        )
        self.predictions = result.predict_on_moderator(moderator, self.xs)

    def plot(self) -> tuple[plt.Figure, plt.Axes]:
        fig, ax = self._define_axes()

        # plot scatter points, larger points at the back
        point_weights = plot_utils.compute_point_weights(self.vi, self.config.point_size)
        point_colours = self._get_point_colours()
        for i in np.argsort(-point_weights):
            ax.scatter(
                self.xi[i],
                self.yi[i],
                s=point_weights[i] ** 2,
                edgecolor=self.config.point_border_colour,
                facecolor=point_colours[i],
                alpha=self.config.point_alpha,
                zorder=3,
            )

        # plot regression line and uncertainty
        level_pct = f"{100 * self.result.spec.level:g}%"
        ax.plot(
            self.xs,
            self.predictions["pred"],
            color=self.config.line_colour,
            linewidth=2,
            label="Meta-regression",
        )
        self._plot_confidence_interval(ax, label=f"{level_pct} confidence interval")
        if self.config.show_prediction_interval:
            self._plot_prediction_interval(ax, label=f"{level_pct} prediction interval")

        self._format_axes(ax)
        self._plot_legend(ax)
        if self.config.title:
            fig.suptitle(self.config.title, fontsize=14)
        fig.tight_layout()
        return fig, ax

    def _define_axes(self):
        if self.ax is None:
            fig, ax = plt.subplots(figsize=self.config.figsize, dpi=self.config.dpi)
        else:
            fig, ax = self.ax.figure, self.ax
        self.fig, self.ax = fig, ax
        return fig, ax

    def _get_point_colours(self) -> list:
        if self.groups is None:
            return ["white"] * len(self.xi)
        self.colour_map = plot_config.get_study_colours(self.groups)
        return [self.colour_map[g] for g in self.groups]

    def _plot_confidence_interval(self, ax, label=None):
        ci_lb, ci_ub = self.predictions["ci_lb"], self.predictions["ci_ub"]
        ax.fill_between(self.xs, ci_lb, ci_ub, color=self.config.ci_colour, alpha=0.3)
        for i, bound in enumerate((ci_lb, ci_ub)):
            ax.plot(
                self.xs,
                bound,
                color=self.config.line_colour,
                linestyle="--",
                linewidth=1,
                label=label if i == 0 else None,
            )

    def _plot_prediction_interval(self, ax, label=None):
        pi_lb, pi_ub = self.predictions["pi_lb"], self.predictions["pi_ub"]
        ax.fill_between(self.xs, pi_lb, pi_ub, color=self.config.pi_colour, alpha=0.1)
        for i, bound in enumerate((pi_lb, pi_ub)):
            ax.plot(
                self.xs,
                bound,
                color=self.config.line_colour,
                linestyle=":",
                linewidth=1,
                label=label if i == 0 else None,
            )

    def _format_axes(self, ax):
        ax.set_xlabel(
            self.config.xlabel
            or plot_config.MODERATOR_LABELS.get(self.moderator, self.moderator)
        )
        ax.set_ylabel(self.config.ylabel)
        ax.set_xlim(self.prediction_limits)
        ax.grid(True, linestyle="--", alpha=0.5)
        if self.config.refline is not None:
            ax.axhline(y=self.config.refline, color="gray", linestyle="-", linewidth=1)

    def _plot_legend(self, ax):
        handles, labels = ax.get_legend_handles_labels()
        if self.groups is not None and len(self.colour_map) <= self.config.max_legend_groups:
            for group, colour in self.colour_map.items():
                handles.append(
                    Line2D(
                        [0],
                        [0],
                        marker="o",
                        color="w",
                        markerfacecolor=colour,
                        markeredgecolor=self.config.point_border_colour,
                        markersize=7,
                    )
                )
                labels.append(group)
        ax.legend(
            handles,
            labels,
            loc=self.config.legend_loc,
            fontsize=self.config.legend_fontsize,
        )


def plot_bubble(
    result: MetaRegressionResult,
    moderator: str,
    ax: plt.Axes = None,
    config: Optional[BubbleConfig] = None,
    **kwargs,
) -> tuple[plt.Figure, plt.Axes]:
    """Convenience wrapper around BubblePlotter."""
    return BubblePlotter(result, moderator, ax=ax, config=config, **kwargs).plot()
