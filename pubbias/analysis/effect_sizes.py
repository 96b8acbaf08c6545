import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from pubbias.exceptions import DataValidationError
from pubbias.processing.loading import ARM_COLUMNS

logger = logging.getLogger(__name__)

EFFECT_MEASURES = ("ROM", "SMD")

# exclusion reasons, checked in this order
MISSING_VALUES = "missing_values"
NON_POSITIVE_SAMPLE_SIZE = "non_positive_sample_size"
NEGATIVE_SD = "negative_sd"
NON_POSITIVE_MEAN = "non_positive_mean"
NON_FINITE_EFFECT = "non_finite_effect"


# --- core effect size calculations ---
def calc_log_response_ratio(
    mu1: float | np.ndarray,
    mu2: float | np.ndarray,
    sd1: float | np.ndarray,
    sd2: float | np.ndarray,
    n1: int | np.ndarray,
    n2: int | np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Calculate the log response ratio (log ratio of means) and its sampling variance.

    Args:
        mu1, mu2 (float): group means (mu1=treatment, mu2=control)
        sd1, sd2 (float): group standard deviations
        n1, n2 (int): group sample sizes

    Returns:
        tuple: log response ratio, sampling variance. Non-positive means give NaN.
    """
    mu1, mu2, sd1, sd2, n1, n2 = (
        np.asarray(a, dtype=float) for a in (mu1, mu2, sd1, sd2, n1, n2)
    )
    with np.errstate(divide="ignore", invalid="ignore"):
        valid = (mu1 > 0) & (mu2 > 0)
        lnrr = np.where(valid, np.log(np.where(valid, mu1 / mu2, 1.0)), np.nan)
        lnrr_var = sd1**2 / (n1 * mu1**2) + sd2**2 / (n2 * mu2**2)
    return lnrr, np.where(valid, lnrr_var, np.nan)


def calc_bias_correction(n1, n2):
    """Calculate bias correction for Cohen's d metric: https://www.campbellcollaboration.org/calculator/equations

    Args:
        n1, n2 (int): number of samples in group 1 (treatment) and group 2 (control)

    Returns:
        float: bias correction factor
    """
    return 1 - 3 / (4 * (np.asarray(n1) + np.asarray(n2) - 2) - 1)


def calc_pooled_sd(n1, n2, sd1, sd2):
    """Calculate pooled standard deviation for two groups."""
    n1, n2, sd1, sd2 = (np.asarray(a, dtype=float) for a in (n1, n2, sd1, sd2))
    return np.sqrt(((n1 - 1) * sd1**2 + (n2 - 1) * sd2**2) / (n1 + n2 - 2))


def calc_hedges_g(
    mu1: float | np.ndarray,
    mu2: float | np.ndarray,
    sd1: float | np.ndarray,
    sd2: float | np.ndarray,
    n1: int | np.ndarray,
    n2: int | np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Calculate Hedges' g (bias-corrected standardised mean difference): https://www.campbellcollaboration.org/calculator/equations

    Args:
        mu1, mu2 (float): group means (mu1=treatment, mu2=control)
        sd1, sd2 (float): group standard deviations
        n1, n2 (int): group sample sizes

    Returns:
        tuple: Hedges' g and its variance
    """
    n1, n2 = np.asarray(n1, dtype=float), np.asarray(n2, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        sd_pooled = calc_pooled_sd(n1, n2, sd1, sd2)
        d = (np.asarray(mu1, dtype=float) - np.asarray(mu2, dtype=float)) / sd_pooled
        d_var = (n1 + n2) / (n1 * n2) + d**2 / (2 * (n1 + n2))
        bias_correction = calc_bias_correction(n1, n2)
    return d * bias_correction, d_var * bias_correction**2


EFFECT_SIZE_FUNCTIONS = {
    "ROM": calc_log_response_ratio,
    "SMD": calc_hedges_g,
}


@dataclass
class ExclusionReport:
    """Record of the rows dropped before modelling, and why."""

    measure: str
    n_before: int
    n_after: int
    reasons: dict[str, int] = field(default_factory=dict)
    excluded: pd.DataFrame = field(default_factory=pd.DataFrame, repr=False)

    @property
    def n_excluded(self) -> int:
        return self.n_before - self.n_after

    def to_frame(self) -> pd.DataFrame:
        rows = [{"reason": k, "n_rows": v} for k, v in self.reasons.items()]
        rows.append({"reason": "total_excluded", "n_rows": self.n_excluded})
        return pd.DataFrame(rows)

    def summary(self) -> str:
        reasons = ", ".join(f"{k}: {v}" for k, v in self.reasons.items() if v)
        return (
            f"{self.measure}: {self.n_before} records in, {self.n_after} retained, "
            f"{self.n_excluded} excluded" + (f" ({reasons})" if reasons else "")
        )


def _exclusion_reasons(df: pd.DataFrame, measure: str) -> pd.Series:
    """Label each row with the first reason it cannot yield an effect size (None if it can)."""
    reasons = pd.Series(None, index=df.index, dtype=object)
    checks = [
        (MISSING_VALUES, df[ARM_COLUMNS].isna().any(axis=1)),
        (
            NON_POSITIVE_SAMPLE_SIZE,
            (df["n_treatment"] <= 0) | (df["n_control"] <= 0),
        ),
        (NEGATIVE_SD, (df["sd_treatment"] < 0) | (df["sd_control"] < 0)),
    ]
    if measure == "ROM":
        checks.append(
            (
                NON_POSITIVE_MEAN,
                (df["mean_treatment"] <= 0) | (df["mean_control"] <= 0),
            )
        )
    for reason, mask in checks:
        reasons[mask & reasons.isna()] = reason
    return reasons


def calculate_effect_sizes(
    df: pd.DataFrame,
    measure: str = "ROM",
    yi_col: str = "yi",
    vi_col: str = "vi",
) -> tuple[pd.DataFrame, ExclusionReport]:
    """
    Calculate effect sizes and sampling variances for a DataFrame of study records.

    Rows which cannot yield a finite effect size with a strictly positive sampling
    variance are excluded (never imputed) and counted in the returned report.

    Args:
        df (pd.DataFrame): study records with treatment/control sample sizes, means and SDs.
        measure (str): "ROM" (log response ratio) or "SMD" (Hedges' g).
        yi_col, vi_col (str): names of the output effect size and variance columns.

    Returns:
        tuple[pd.DataFrame, ExclusionReport]: retained rows with effect sizes, and the exclusion report.
    """
    if measure not in EFFECT_SIZE_FUNCTIONS:
        raise ValueError(f"Unknown effect measure: {measure}. Use one of {EFFECT_MEASURES}")
    missing = [col for col in ARM_COLUMNS if col not in df.columns]
    if missing:
        raise DataValidationError(f"Missing columns for effect size calculation: {missing}")

    result_df = df.copy()
    reasons = _exclusion_reasons(result_df, measure)

    yi, vi = EFFECT_SIZE_FUNCTIONS[measure](
        result_df["mean_treatment"],
        result_df["mean_control"],
        result_df["sd_treatment"],
        result_df["sd_control"],
        result_df["n_treatment"],
        result_df["n_control"],
    )
    result_df[yi_col] = yi
    result_df[vi_col] = vi

    undefined = ~np.isfinite(yi) | ~np.isfinite(vi) | ~(vi > 0)
    reasons[undefined & reasons.isna().to_numpy()] = NON_FINITE_EFFECT

    keep = reasons.isna()
    excluded = result_df.loc[~keep].assign(exclusion_reason=reasons[~keep])
    report = ExclusionReport(
        measure=measure,
        n_before=len(result_df),
        n_after=int(keep.sum()),
        reasons={
            reason: int((reasons == reason).sum())
            for reason in [
                MISSING_VALUES,
                NON_POSITIVE_SAMPLE_SIZE,
                NEGATIVE_SD,
                NON_POSITIVE_MEAN,
                NON_FINITE_EFFECT,
            ]
        },
        excluded=excluded,
    )
    logger.info(f"Effect sizes calculated. {report.summary()}")
    if report.n_after == 0:
        raise DataValidationError(
            f"No records with a defined {measure} effect size remain. {report.summary()}"
        )
    return result_df.loc[keep].reset_index(drop=True), report
