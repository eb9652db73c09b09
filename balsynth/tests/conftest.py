# tests/conftest.py
import numpy as np
import pandas as pd
import pytest

from balsynth.utils.simutils import sim_factor_model


@pytest.fixture
def small_panel():
    """20 controls, 12 pre-periods, 4 post-periods, single outcome."""
    df, metadata = sim_factor_model(20, 12, 4, 3, seed=1)
    return df, metadata


@pytest.fixture
def multi_outcome_panel():
    """Two outcome types (outcome_id 1 and 2) sharing unit loadings."""
    df, metadata = sim_factor_model(20, 8, 4, 3, n_outcomes=2, seed=2)
    return df, metadata


@pytest.fixture
def toy_panel():
    """Three units, four periods, unit 'a' treated from period 3 on."""
    rows = []
    values = {"a": [1.0, 2.0, 3.0, 10.0], "b": [0.0, 1.0, 2.0, 3.0], "c": [2.0, 3.0, 4.0, 5.0]}
    for unit, ys in values.items():
        for t, y in enumerate(ys):
            rows.append({"unit": unit, "time": t, "outcome": y, "treated": int(unit == "a" and t >= 3)})
    return pd.DataFrame(rows), {"t_int": 3}


@pytest.fixture
def design():
    """Unit-by-column design whose treated row is a convex combination of the controls."""
    rng = np.random.default_rng(0)
    X0 = rng.normal(size=(20, 3))
    w_true = rng.dirichlet(np.ones(20))
    X = np.vstack([X0.T @ w_true, X0])
    trt = np.r_[1, np.zeros(20, dtype=int)]
    return X, trt
