import numpy as np
import pandas as pd
import pytest

from pubbias.analysis.effect_sizes import calculate_effect_sizes
from pubbias.exceptions import MissingModeratorError
from pubbias.processing.moderators import (
    add_observation_id,
    add_standard_error,
    centre_moderators,
    prepare_moderators,
)


def test_add_observation_id_unique():
    df = add_observation_id(pd.DataFrame({"study_id": ["a", "a", "b"]}))
    assert df["obs_id"].is_unique
    assert list(df["obs_id"]) == [1, 2, 3]


def test_centred_moderators_mean_zero_variance_unchanged(study_records_df):
    out = centre_moderators(study_records_df)
    for col in ["year", "latitude", "longitude"]:
        assert out[f"{col}_c"].mean() == pytest.approx(0, abs=1e-9)
        assert out[f"{col}_c"].var() == pytest.approx(study_records_df[col].var())


def test_centre_moderators_missing_column(study_records_df):
    with pytest.raises(MissingModeratorError) as exc_info:
        centre_moderators(study_records_df, ["year", "depth"])
    assert exc_info.value.missing == ["depth"]


def test_add_standard_error():
    out = add_standard_error(pd.DataFrame({"vi": [0.04, 0.25]}))
    np.testing.assert_allclose(out["sei"], [0.2, 0.5])


def test_prepare_moderators(study_records_df):
    effects, _ = calculate_effect_sizes(study_records_df)
    out = prepare_moderators(effects)
    assert {"obs_id", "year_c", "latitude_c", "longitude_c", "sei"} <= set(out.columns)
    assert len(out) == len(effects)
    np.testing.assert_allclose(out["sei"] ** 2, out["vi"])
