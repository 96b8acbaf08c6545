import matplotlib.pyplot as plt
import numpy as np
import pytest

from pubbias.analysis import bias
from pubbias.exceptions import MissingModeratorError
from pubbias.plotting import bubble, funnel, plot_utils, tables


@pytest.fixture
def detection(effect_size_df):
    return bias.fit_detection_model(effect_size_df)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def test_compute_point_weights_scale_with_precision():
    weights = plot_utils.compute_point_weights(np.array([0.01, 0.04, 0.25]), "vinv")
    assert weights[0] == pytest.approx(31)
    assert weights[-1] == pytest.approx(1)
    assert np.all(np.diff(weights) < 0)


def test_compute_point_weights_constant():
    weights = plot_utils.compute_point_weights(np.array([0.1, 0.1]))
    np.testing.assert_array_equal(weights, [20, 20])


def test_bubble_plot(detection, effect_size_df):
    plotter = bubble.BubblePlotter(detection, "sei")
    fig, ax = plotter.plot()
    # one marker per observation
    n_points = sum(len(c.get_offsets()) for c in ax.collections if len(c.get_sizes()))
    assert n_points == len(effect_size_df)
    assert ax.get_xlabel() == "Standard error"
    assert len(plotter.colour_map) == effect_size_df["study_id"].nunique()
    assert (plotter.predictions["ci_lb"] <= plotter.predictions["pred"]).all()


def test_bubble_plot_on_existing_axes(detection):
    fig, axes = plt.subplots(1, 2)
    bubble.plot_bubble(detection, "sei", ax=axes[0])
    bubble.plot_bubble(detection, "year_c", ax=axes[1])
    assert plot_utils.label_panels(axes) == ["A", "B"]
    assert axes[1].get_xlabel() == "Publication year (centred)"
    assert [t.get_text() for t in axes[0].texts] == ["A"]
    assert [t.get_text() for t in axes[1].texts] == ["B"]


def test_label_panels_lowercase():
    fig, axes = plt.subplots(2, 2)
    assert plot_utils.label_panels(axes, lowercase=True) == ["a", "b", "c", "d"]
    assert axes[1, 0].texts[0].get_text() == "c"


def test_bubble_plot_unknown_moderator(detection):
    with pytest.raises(MissingModeratorError):
        bubble.BubblePlotter(detection, "latitude_c")


def test_funnel_contours_narrow_with_precision():
    contours = funnel.funnel_contours(0.0, np.array([1.0, 10.0]), levels=(0.95,))
    lower, upper = contours[0.95]
    assert upper[0] == pytest.approx(1.959964, rel=1e-5)
    assert upper[1] < upper[0]
    np.testing.assert_allclose(lower, -upper)


def test_funnel_plot(effect_size_df):
    pooled = bias.fit_unadjusted_model(effect_size_df)
    fig, ax = funnel.plot_funnel(effect_size_df, pooled)
    assert ax.get_ylabel() == "Precision (1 / SE)"
    assert ax.get_ylim()[1] >= (1 / effect_size_df["sei"]).max()
    labels = ax.get_legend_handles_labels()[1]
    assert any(label.startswith("Pooled estimate") for label in labels)


def test_save_fig(tmp_path, detection):
    fig, _ = bubble.plot_bubble(detection, "sei")
    fp = plot_utils.save_fig(fig, "bubble_sei", run_key="test", fig_dir=tmp_path)
    assert fp == tmp_path / "bubble_sei_test.png"
    assert fp.exists()


def test_coefficient_table(detection):
    table = tables.coefficient_table(detection)
    assert list(table.index) == ["sei", "year_c"]
    assert table.loc["year_c", "signif"] == ""
    assert table.loc["sei", "signif"].startswith("*")


def test_heterogeneity_table(detection):
    table = tables.heterogeneity_table(detection)
    assert len(table) == 1
    assert {"QE", "QM", "sigma2.study", "sigma2.observation", "I2.total", "AICc"} <= set(table.columns)


def test_model_summary_text(detection):
    text = tables.model_summary_text(detection)
    assert "yi ~ sei + year_c - 1" in text
    assert "sigma^2.study" in text
    assert "Test of moderators" in text
