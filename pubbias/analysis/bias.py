import logging
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm

from pubbias.analysis.meta_regression import (
    DEFAULT_RANDOM_EFFECTS,
    MetaRegressionResult,
    MetaRegressionSpec,
    fit_meta_regression,
)
from pubbias.exceptions import MissingModeratorError

logger = logging.getLogger(__name__)

DETECTION = "bias_detection"
ADJUSTMENT = "bias_adjustment"
UNADJUSTED = "unadjusted"

# fixed-effect part of each model; the adjustment and unadjusted models need an intercept
MODEL_DEFINITIONS = {
    DETECTION: {"moderators": ["sei", "year_c"], "intercept": False},
    ADJUSTMENT: {"moderators": ["vi", "year_c"], "intercept": True},
    UNADJUSTED: {"moderators": [], "intercept": True},
}
POOLED_MODELS = (ADJUSTMENT, UNADJUSTED)


# --- the three publication-bias models ---
def detection_spec(
    extra_moderators: Optional[list[str]] = None,
    sei_col: str = "sei",
    year_col: str = "year_c",
    random_effects=DEFAULT_RANDOM_EFFECTS,
    level: float = 0.95,
) -> MetaRegressionSpec:
    """Small-study (sei) and decline (year) effects together, with the intercept suppressed."""
    return MetaRegressionSpec(
        name=DETECTION,
        moderators=(sei_col, year_col, *(extra_moderators or [])),
        intercept=False,
        random_effects=random_effects,
        level=level,
    )


def adjustment_spec(
    vi_col: str = "vi",
    year_col: str = "year_c",
    random_effects=DEFAULT_RANDOM_EFFECTS,
    level: float = 0.95,
) -> MetaRegressionSpec:
    """PEESE-style model: the intercept is the effect at vi = 0 and year_c = 0."""
    return MetaRegressionSpec(
        name=ADJUSTMENT,
        moderators=(vi_col, year_col),
        intercept=True,
        random_effects=random_effects,
        level=level,
    )


def unadjusted_spec(
    random_effects=DEFAULT_RANDOM_EFFECTS, level: float = 0.95
) -> MetaRegressionSpec:
    """Intercept-only model: the naive pooled effect."""
    return MetaRegressionSpec(
        name=UNADJUSTED,
        moderators=(),
        intercept=True,
        random_effects=random_effects,
        level=level,
    )


def fit_detection_model(df: pd.DataFrame, **kwargs) -> MetaRegressionResult:
    return fit_meta_regression(df, detection_spec(**kwargs))


def fit_adjustment_model(df: pd.DataFrame, **kwargs) -> MetaRegressionResult:
    return fit_meta_regression(df, adjustment_spec(**kwargs))


def fit_unadjusted_model(df: pd.DataFrame, **kwargs) -> MetaRegressionResult:
    return fit_meta_regression(df, unadjusted_spec(**kwargs))


def adjusted_effect(result: MetaRegressionResult) -> pd.Series:
    """The bias-corrected pooled effect: the adjustment model's intercept."""
    return result.coefficient("intrcpt")


# --- Egger's regression test ---
def egger_test(
    df: pd.DataFrame, yi_col: str = "yi", sei_col: str = "sei"
) -> dict:
    """
    Classic Egger regression test for funnel-plot asymmetry.

    Regresses the standardised effect (yi / sei) on precision (1 / sei) by OLS. An
    intercept different from zero indicates asymmetry. Ignores the multilevel
    structure, so it complements rather than replaces the detection model.

    Returns:
        dict: intercept, its standard error, t value, p value and CI, the slope and k.
    """
    missing = [col for col in (yi_col, sei_col) if col not in df.columns]
    if missing:
        raise MissingModeratorError(missing, "egger")
    data = df[[yi_col, sei_col]].dropna()
    precision = 1 / data[sei_col].to_numpy(dtype=float)
    snd = data[yi_col].to_numpy(dtype=float) * precision
    X = sm.add_constant(precision, has_constant="add")
    fit = sm.OLS(snd, X).fit()
    ci = np.asarray(fit.conf_int())[0]
    result = {
        "intercept": float(fit.params[0]),
        "se": float(fit.bse[0]),
        "tval": float(fit.tvalues[0]),
        "pval": float(fit.pvalues[0]),
        "ci_lb": float(ci[0]),
        "ci_ub": float(ci[1]),
        "slope": float(fit.params[1]),
        "k": int(len(data)),
    }
    logger.info(
        f"Egger test: intercept = {result['intercept']:.3f} (p = {result['pval']:.3g}), k = {result['k']}"
    )
    return result


# --- comparison of pooled estimates ---
COMPARISON_COLUMNS = ["estimate", "se", "pval", "ci_lb", "ci_ub"]


def comparison_table(
    unadjusted: MetaRegressionResult,
    adjusted: MetaRegressionResult,
    term: str = "intrcpt",
) -> pd.DataFrame:
    """Side-by-side naive and bias-corrected pooled effects, copied from the fitted results."""
    rows = {
        "unadjusted": unadjusted.coefficient(term)[COMPARISON_COLUMNS],
        "bias_adjusted": adjusted.coefficient(term)[COMPARISON_COLUMNS],
    }
    table = pd.DataFrame(rows).T
    table.index.name = "model"
    table["model_name"] = [unadjusted.spec.name, adjusted.spec.name]
    table["k"] = [unadjusted.k, adjusted.k]
    return table
