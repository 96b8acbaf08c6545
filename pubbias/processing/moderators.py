import logging
from typing import Optional

import numpy as np
import pandas as pd

from pubbias.exceptions import MissingModeratorError

logger = logging.getLogger(__name__)

DEFAULT_CENTRED_MODERATORS = ["year", "latitude", "longitude"]


def add_observation_id(df: pd.DataFrame, id_col: str = "obs_id") -> pd.DataFrame:
    """Assign a unique identifier to each row (the observation-level random effect)."""
    df = df.copy()
    df[id_col] = np.arange(1, len(df) + 1)
    return df


def centre_column(series: pd.Series) -> pd.Series:
    """Mean-centre a numeric column. The variance is unchanged."""
    values = series.astype(float)
    return values - values.mean()


def centre_moderators(
    df: pd.DataFrame, columns: Optional[list[str]] = None, suffix: str = "_c"
) -> pd.DataFrame:
    """Add a mean-centred copy of each continuous moderator as '<column><suffix>'."""
    columns = DEFAULT_CENTRED_MODERATORS if columns is None else columns
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise MissingModeratorError(missing)
    df = df.copy()
    for col in columns:
        if df[col].isna().any():
            logger.warning(
                f"{int(df[col].isna().sum())} missing value(s) in moderator '{col}'"
            )
        df[f"{col}{suffix}"] = centre_column(df[col])
    return df


def add_standard_error(
    df: pd.DataFrame, vi_col: str = "vi", sei_col: str = "sei"
) -> pd.DataFrame:
    """Add the standard error (square root of the sampling variance) as a bias predictor."""
    if vi_col not in df.columns:
        raise MissingModeratorError([vi_col])
    df = df.copy()
    df[sei_col] = np.sqrt(df[vi_col])
    return df


def prepare_moderators(
    df: pd.DataFrame,
    centre: Optional[list[str]] = None,
    vi_col: str = "vi",
) -> pd.DataFrame:
    """Derive the auxiliary model columns: obs_id, centred moderators and sei."""
    df = add_observation_id(df)
    df = centre_moderators(df, centre)
    df = add_standard_error(df, vi_col=vi_col)
    logger.info(
        f"Prepared moderators for {len(df)} observations "
        f"(centred: {', '.join(centre if centre is not None else DEFAULT_CENTRED_MODERATORS)})"
    )
    return df
