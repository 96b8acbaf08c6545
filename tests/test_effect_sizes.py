import numpy as np
import pandas as pd
import pytest

from pubbias.analysis.effect_sizes import (
    NON_POSITIVE_MEAN,
    calc_hedges_g,
    calc_log_response_ratio,
    calculate_effect_sizes,
)
from pubbias.exceptions import DataValidationError


def test_calc_log_response_ratio():
    yi, vi = calc_log_response_ratio(10.0, 5.0, 2.0, 1.0, 10, 10)
    assert yi == pytest.approx(np.log(2))
    # 2^2 / (10 * 10^2) + 1^2 / (10 * 5^2)
    assert vi == pytest.approx(0.008)


def test_calc_log_response_ratio_non_positive_means():
    yi, vi = calc_log_response_ratio(
        np.array([0.0, -1.0, 2.0]), np.array([1.0, 1.0, 0.0]), 1.0, 1.0, 5, 5
    )
    assert np.isnan(yi).all()
    assert np.isnan(vi).all()


def test_calc_hedges_g_direction_and_variance():
    g, v = calc_hedges_g(12.0, 10.0, 2.0, 2.0, 20, 20)
    # d = 1, small-sample correction shrinks it
    assert 0.9 < g < 1.0
    assert v > 0


def test_calculate_effect_sizes_excludes_non_positive_means(study_records_df):
    out, report = calculate_effect_sizes(study_records_df)
    n_non_positive = int(
        ((study_records_df["mean_treatment"] <= 0) | (study_records_df["mean_control"] <= 0)).sum()
    )
    assert n_non_positive == 2
    assert report.n_before == len(study_records_df)
    assert report.n_after == len(study_records_df) - n_non_positive
    assert len(out) == report.n_after
    assert report.reasons[NON_POSITIVE_MEAN] == n_non_positive
    assert set(report.excluded["exclusion_reason"]) == {NON_POSITIVE_MEAN}


def test_calculate_effect_sizes_retained_variances_positive(study_records_df):
    out, _ = calculate_effect_sizes(study_records_df)
    assert np.isfinite(out["yi"]).all()
    assert np.isfinite(out["vi"]).all()
    assert (out["vi"] > 0).all()


def test_calculate_effect_sizes_zero_sd_excluded(study_records_df):
    df = study_records_df.copy()
    df.loc[0, ["sd_treatment", "sd_control"]] = 0.0
    out, report = calculate_effect_sizes(df)
    assert report.reasons["non_finite_effect"] == 1
    assert report.n_after == len(df) - 3


def test_calculate_effect_sizes_missing_values(study_records_df):
    df = study_records_df.copy()
    df.loc[1, "n_control"] = np.nan
    _, report = calculate_effect_sizes(df)
    assert report.reasons["missing_values"] == 1
    assert report.to_frame().iloc[-1]["n_rows"] == report.n_excluded


def test_calculate_effect_sizes_smd_keeps_negative_means(study_records_df):
    out, report = calculate_effect_sizes(study_records_df, measure="SMD")
    assert report.reasons[NON_POSITIVE_MEAN] == 0
    assert len(out) == len(study_records_df)


def test_calculate_effect_sizes_no_rows_left():
    df = pd.DataFrame(
        {
            "n_treatment": [5.0],
            "n_control": [5.0],
            "mean_treatment": [-1.0],
            "mean_control": [2.0],
            "sd_treatment": [1.0],
            "sd_control": [1.0],
        }
    )
    with pytest.raises(DataValidationError):
        calculate_effect_sizes(df)


def test_calculate_effect_sizes_unknown_measure(study_records_df):
    with pytest.raises(ValueError):
        calculate_effect_sizes(study_records_df, measure="OR")
