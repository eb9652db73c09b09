import warnings

import numpy as np
import pytest
from unittest.mock import patch

from balsynth import BALANCER
from balsynth.config_models import (
    BalancerConfig,
    BaseEstimatorResults,
    EffectsResults,
    FitDiagnosticsResults,
    TimeSeriesResults,
    WeightsResults,
    MethodDetailsResults,
)
from balsynth.exceptions import BalsynthEstimationError, DimensionError
from balsynth.utils.simutils import sim_factor_model


def _control_mean(df):
    wide = df.pivot(index="time", columns="unit", values="outcome")
    return wide.drop(columns=0).mean(axis=1).to_numpy()


def test_balancer_creation(small_panel):
    df, metadata = small_panel
    estimator = BALANCER({"df": df, "metadata": metadata, "hyperparam": 0.5, "link": "linear"})
    assert isinstance(estimator.config, BalancerConfig)
    assert estimator.hyperparam == 0.5
    assert estimator.link == "linear"
    assert estimator.regularizer == "l2"
    assert estimator.normalized


def test_balancer_fit_smoke(small_panel):
    df, metadata = small_panel
    results = BALANCER(BalancerConfig(df=df, metadata=metadata, hyperparam=1.0)).fit()

    assert isinstance(results, BaseEstimatorResults)
    assert isinstance(results.effects, EffectsResults)
    assert isinstance(results.fit_diagnostics, FitDiagnosticsResults)
    assert isinstance(results.time_series, TimeSeriesResults)
    assert isinstance(results.weights, WeightsResults)
    assert isinstance(results.method_details, MethodDetailsResults)
    assert results.method_details.method_name == "BALANCER"
    assert len(results.weights.donor_weights) == 20
    assert sum(results.weights.donor_weights.values()) == pytest.approx(1.0)
    assert results.time_series.counterfactual_outcome.shape == (16,)
    assert list(results.group_fits) == ["outcome"]
    assert (results.outcomes["synthetic"] == "Y").sum() == 16


def test_balancer_loose_tolerance_is_control_average(small_panel):
    df, metadata = small_panel
    results = BALANCER({"df": df, "metadata": metadata, "hyperparam": 1e3}).fit()
    assert results.feasible
    np.testing.assert_allclose(results.time_series.counterfactual_outcome, _control_mean(df))
    np.testing.assert_allclose(list(results.weights.donor_weights.values()), np.full(20, 0.05))


@pytest.mark.parametrize("link", ["logit", "linear", "pos-linear"])
@pytest.mark.parametrize("regularizer", ["l1", "l2", "linf", "ridge"])
def test_balancer_link_regularizer_grid(small_panel, link, regularizer):
    df, metadata = small_panel
    config = BalancerConfig(
        df=df, metadata=metadata, hyperparam=0.5, link=link, regularizer=regularizer,
        opts={"MAX_ITERS": 300},
    )
    with warnings.catch_warnings():
        # tight tolerances on the linear links may stop short of the iteration cap
        warnings.simplefilter("ignore", UserWarning)
        results = BALANCER(config).fit()
    weights = np.array(list(results.weights.donor_weights.values()))
    assert np.all(weights >= 0)
    assert weights.sum() == pytest.approx(1.0)
    assert results.fit.link == link
    assert results.fit.regularizer == regularizer


def test_balancer_per_outcome_tolerances(multi_outcome_panel):
    df, metadata = multi_outcome_panel
    results = BALANCER({
        "df": df, "metadata": metadata, "outcome_col": "outcome_id", "hyperparam": [1e3, 1e3],
    }).fit()
    assert list(results.fit.group_errors) == ["1", "2"]
    assert list(results.group_fits) == ["1", "2"]
    assert all(fit.feasible for fit in results.group_fits.values())
    assert set(results.effects.additional_effects["by_outcome"]) == {"1", "2"}


def test_balancer_infeasible_warns():
    df, metadata = sim_factor_model(5, 30, 2, 5, seed=0)
    estimator = BALANCER({"df": df, "metadata": metadata, "hyperparam": 0.0, "opts": {"MAX_ITERS": 200}})
    with pytest.warns(UserWarning, match="BALANCER"):
        results = estimator.fit()
    assert not results.feasible
    assert not results.group_fits["outcome"].feasible


def test_balancer_bad_hyperparam_length(small_panel):
    df, metadata = small_panel
    with pytest.raises(DimensionError):
        BALANCER({"df": df, "metadata": metadata, "hyperparam": [0.1, 0.2, 0.3]}).fit()


@patch("balsynth.estimators.balancer.BalanceOpt.fit", side_effect=np.linalg.LinAlgError("singular"))
def test_balancer_wraps_linalg_errors(mock_fit, small_panel):
    df, metadata = small_panel
    with pytest.raises(BalsynthEstimationError, match="Linear algebra error in BALANCER"):
        BALANCER({"df": df, "metadata": metadata, "hyperparam": 0.1}).fit()
