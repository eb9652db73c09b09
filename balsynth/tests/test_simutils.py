import numpy as np
import pytest

from balsynth.exceptions import BalsynthConfigError
from balsynth.utils.simutils import sim_factor_model


def test_sim_factor_model_layout():
    df, metadata = sim_factor_model(5, 6, 3, 2, n_outcomes=2, seed=0)
    assert list(df.columns) == ["unit", "time", "outcome", "treated", "outcome_id"]
    assert len(df) == 6 * 9 * 2
    assert metadata == {"t_int": 6, "trt_unit": 0}
    assert sorted(df["outcome_id"].unique()) == [1, 2]
    treated_rows = df[df["treated"] == 1]
    assert (treated_rows["unit"] == 0).all()
    assert (treated_rows["time"] >= 6).all()
    assert len(treated_rows) == 3 * 2


def test_sim_factor_model_seeded():
    a, _ = sim_factor_model(4, 5, 2, 2, seed=3)
    b, _ = sim_factor_model(4, 5, 2, 2, seed=3)
    np.testing.assert_array_equal(a["outcome"], b["outcome"])


def test_sim_factor_model_effect_on_treated_post_periods_only():
    base, _ = sim_factor_model(4, 5, 2, 2, seed=3)
    shifted, _ = sim_factor_model(4, 5, 2, 2, seed=3, effect=2.5)
    diff = shifted["outcome"] - base["outcome"]
    np.testing.assert_allclose(diff[shifted["treated"] == 1], 2.5)
    np.testing.assert_allclose(diff[shifted["treated"] == 0], 0.0)


def test_sim_factor_model_noiseless_rank():
    df, _ = sim_factor_model(10, 8, 0, 2, seed=1, noise_sd=0.0)
    Y = df.pivot(index="unit", columns="time", values="outcome").to_numpy()
    assert np.linalg.matrix_rank(Y, tol=1e-8) == 2


@pytest.mark.parametrize("kwargs", [
    {"n_controls": 0, "t_pre": 5, "t_post": 2, "n_factors": 2},
    {"n_controls": 3, "t_pre": 0, "t_post": 2, "n_factors": 2},
    {"n_controls": 3, "t_pre": 5, "t_post": -1, "n_factors": 2},
    {"n_controls": 3, "t_pre": 5, "t_post": 2, "n_factors": 2, "noise_sd": -1.0},
])
def test_sim_factor_model_bad_arguments(kwargs):
    with pytest.raises(BalsynthConfigError):
        sim_factor_model(**kwargs)
