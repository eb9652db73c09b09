import numpy as np
import pytest

from balsynth import BALANCERCV
from balsynth.config_models import BalancerCVConfig, CVResult

LOOSE = [1e3, 1e4]


def test_balancercv_creation(small_panel):
    df, metadata = small_panel
    estimator = BALANCERCV({"df": df, "metadata": metadata, "hyperparams": LOOSE})
    assert isinstance(estimator.config, BalancerCVConfig)
    assert estimator.method == "loo"
    assert estimator.hyperparams == LOOSE


@pytest.mark.parametrize(
    "extra, n_rows",
    [({"method": "loo"}, 20), ({"method": "kfold", "n_folds": 4, "seed": 0}, 4),
     ({"method": "bootstrap", "n_boot": 3, "seed": 0, "n_jobs": 2}, 3)],
)
def test_balancercv_fit(small_panel, extra, n_rows):
    df, metadata = small_panel
    results = BALANCERCV({"df": df, "metadata": metadata, "hyperparams": LOOSE, **extra}).fit()

    assert isinstance(results.cv, CVResult)
    assert results.cv.errors.shape == (n_rows, 2)
    assert results.cv.best_hyperparam == 1e3
    assert results.method_details.parameters_used["best_hyperparam"] == 1e3
    assert results.fit.hyperparam == 1e3
    assert results.feasible
    np.testing.assert_allclose(list(results.weights.donor_weights.values()), np.full(20, 0.05))


def test_balancercv_prefers_lower_error(small_panel):
    df, metadata = small_panel
    results = BALANCERCV({
        "df": df, "metadata": metadata, "hyperparams": [0.5, 1e3], "opts": {"MAX_ITERS": 500},
    }).fit()
    best = results.cv.best_index
    assert results.cv.mean_errors[best] == np.nanmin(results.cv.mean_errors)
