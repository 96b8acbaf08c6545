import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

# 3 studies per year, 4 observations per study; every year block is identical
YEARS = [2000, 2005, 2010, 2015]
STUDY_SEI = [0.08, 0.16, 0.30]
OBS_SEI_SCALE = [0.9, 1.0, 1.1, 1.2]
OBS_RESIDUALS = [0.03, -0.02, 0.01, -0.02]
SMALL_STUDY_SLOPE = 0.6


@pytest.fixture
def effect_size_df():
    """Effect sizes with a built-in small-study effect (yi grows with sei) and no temporal trend."""
    rows = []
    for year in YEARS:
        for s, study_sei in enumerate(STUDY_SEI):
            for scale, resid in zip(OBS_SEI_SCALE, OBS_RESIDUALS):
                sei = study_sei * scale
                rows.append(
                    {
                        "study_id": f"{year}_{s}",
                        "year": year,
                        "sei": sei,
                        "vi": sei**2,
                        "yi": SMALL_STUDY_SLOPE * sei + resid,
                        "ecosystem": ["marine", "freshwater", "terrestrial"][s],
                    }
                )
    df = pd.DataFrame(rows)
    df["obs_id"] = np.arange(1, len(df) + 1)
    df["year_c"] = df["year"] - df["year"].mean()
    return df


@pytest.fixture
def study_records_df():
    """Study-level summary statistics in the study-record schema."""
    return pd.DataFrame(
        {
            "study_id": ["a", "a", "b", "b", "c", "c"],
            "n_treatment": [10, 10, 5, 5, 8, 8],
            "n_control": [10, 10, 5, 5, 8, 8],
            "mean_treatment": [10.0, 12.0, 0.0, 4.0, 7.0, -1.0],
            "mean_control": [5.0, 6.0, 3.0, 2.0, 7.0, 2.0],
            "sd_treatment": [2.0, 2.5, 1.0, 1.0, 1.5, 0.5],
            "sd_control": [1.0, 1.5, 1.0, 0.8, 1.5, 0.5],
            "year": [2001.0, 2001.0, 2008.0, 2008.0, 2015.0, 2015.0],
            "latitude": [10.0, 10.0, -20.0, -20.0, 45.0, 45.0],
            "longitude": [100.0, 100.0, 30.0, 30.0, -70.0, -70.0],
            "ecosystem": ["marine", "marine", "terrestrial", "terrestrial", "freshwater", "freshwater"],
            "taxon": ["plant", "invertebrate", "plant", "plant", "vertebrate", "plant"],
        }
    )


@pytest.fixture
def study_records_csv(tmp_path, study_records_df):
    """Study records written with source column names that need mapping."""
    fp = tmp_path / "records.csv"
    study_records_df.rename(
        columns={"study_id": "Paper ID", "n_treatment": "N T", "mean_treatment": "Mean.T"}
    ).to_csv(fp, index=False)
    return fp
