import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from pubbias.exceptions import DataValidationError

logger = logging.getLogger(__name__)

# study-record schema
STUDY_ID_COLUMN = "study_id"
ARM_COLUMNS = [
    "n_treatment",
    "n_control",
    "mean_treatment",
    "mean_control",
    "sd_treatment",
    "sd_control",
]
CONTINUOUS_MODERATORS = ["year", "latitude", "longitude"]
CATEGORICAL_MODERATORS = ["ecosystem", "taxon"]
REQUIRED_COLUMNS = [STUDY_ID_COLUMN] + ARM_COLUMNS + CONTINUOUS_MODERATORS


def normalize_columns(
    df: pd.DataFrame, column_map: Optional[dict] = None
) -> pd.DataFrame:
    """Normalize column names to snake case, then apply any source -> schema mapping."""
    df = df.copy()
    df.columns = (
        df.columns.str.normalize("NFKC")
        .str.strip()
        .str.lower()
        .str.replace(r"[()]", "", regex=True)
        .str.replace(r"[\s\.\-]+", "_", regex=True)
    )
    if column_map:
        normalised_map = {
            str(k).strip().lower().replace(" ", "_"): v for k, v in column_map.items()
        }
        unmatched = [k for k in normalised_map if k not in df.columns]
        if unmatched:
            logger.warning(f"Column mapping keys not found in data: {unmatched}")
        df = df.rename(columns=normalised_map)
    return df


def clean_strings(df: pd.DataFrame) -> pd.DataFrame:
    """Strip non-breaking spaces and surrounding whitespace from string cells."""
    return df.map(
        lambda x: unicodedata.normalize("NFKD", x).replace("\xa0", " ").strip()
        if isinstance(x, str)
        else x
    )


def replace_empty_cells_with_nan(df: pd.DataFrame) -> pd.DataFrame:
    """Replace empty cells with NaN."""
    return df.replace(r"^\s*$", np.nan, regex=True)


def remove_unnamed_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Remove unnamed columns."""
    return df.loc[:, ~df.columns.str.contains("^unnamed")]


def extract_year_from_str(s) -> float:
    """Extract a four-digit year from a string such as 'Smith et al. 2012'.

    Raises:
        ValueError: If multiple years are found in the string.
    """
    if pd.isna(s):
        return np.nan
    matches = re.findall(r"(?<!\d)\d{4}(?!\d)", str(s))
    if not matches:
        return np.nan
    if len(matches) > 1:
        raise ValueError(f"Multiple years found in string: {matches} (input: {s})")
    return float(matches[0])


def convert_types(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce schema columns to their expected types.

    Values that cannot be parsed become NaN and are dealt with (and counted)
    by the effect size calculator rather than being silently filled here.
    """
    df = df.copy()
    if "year" in df.columns and not pd.api.types.is_numeric_dtype(df["year"]):
        df["year"] = df["year"].apply(extract_year_from_str)
    for col in ARM_COLUMNS + CONTINUOUS_MODERATORS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)
    for col in [STUDY_ID_COLUMN] + CATEGORICAL_MODERATORS:
        if col in df.columns:
            df[col] = df[col].astype("string")
    return df


def validate_study_records(
    df: pd.DataFrame, required_columns: Optional[list[str]] = None
) -> None:
    """Check that the study-record schema columns are present."""
    required_columns = required_columns or REQUIRED_COLUMNS
    missing = [col for col in required_columns if col not in df.columns]
    if missing:
        raise DataValidationError(
            f"Missing required study-record columns: {missing}. "
            f"Available columns: {list(df.columns)}"
        )
    missing_categorical = [c for c in CATEGORICAL_MODERATORS if c not in df.columns]
    if missing_categorical:
        logger.warning(f"Missing categorical moderator columns: {missing_categorical}")
    if df[STUDY_ID_COLUMN].isna().any():
        raise DataValidationError(
            f"{int(df[STUDY_ID_COLUMN].isna().sum())} row(s) have no {STUDY_ID_COLUMN}"
        )


def load_study_records(
    fp: str | Path,
    column_map: Optional[dict] = None,
    delimiter: str = ",",
    required_columns: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Read a delimited file of study-level summary statistics.

    Args:
        fp (str | Path): path to the delimited file.
        column_map (dict, optional): mapping of source column names to schema names.
        delimiter (str): field delimiter.
        required_columns (list[str], optional): schema columns which must be present.

    Returns:
        pd.DataFrame: one row per study record, with schema column names and types.

    Raises:
        DataValidationError: if the file cannot be read or lacks required columns.
    """
    fp = Path(fp)
    if not fp.exists():
        raise DataValidationError(f"Input file not found: {fp}")
    try:
        df = pd.read_csv(fp, sep=delimiter)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise DataValidationError(f"Could not read {fp}: {e}") from e

    df = normalize_columns(df, column_map)
    df = remove_unnamed_columns(df)
    df = clean_strings(df)
    df = replace_empty_cells_with_nan(df)
    validate_study_records(df, required_columns)
    df = convert_types(df).reset_index(drop=True)

    logger.info(
        f"Loaded {len(df)} study records from {df[STUDY_ID_COLUMN].nunique()} studies ({fp.name})"
    )
    return df
