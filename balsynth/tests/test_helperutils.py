import warnings

import cvxpy
import numpy as np
import pytest
from pydantic import BaseModel, ValidationError

from balsynth.config_models import BalancerConfig, FitResult
from balsynth.exceptions import (
    BalsynthConfigError,
    BalsynthDataError,
    BalsynthEstimationError,
    SearchExhaustedError,
)
from balsynth.utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible


class _Strict(BaseModel):
    x: int


def _validation_error():
    try:
        _Strict(x="not an int")
    except ValidationError as exc:
        return exc


@pytest.mark.parametrize(
    "raised, expected",
    [
        (KeyError("k"), BalsynthDataError),
        (IndexError("i"), BalsynthDataError),
        (ValueError("v"), BalsynthDataError),
        (np.linalg.LinAlgError("svd"), BalsynthEstimationError),
        (cvxpy.error.SolverError("solver"), BalsynthEstimationError),
        (TypeError("t"), BalsynthEstimationError),
        (FloatingPointError("fp"), BalsynthEstimationError),
    ],
)
def test_estimation_errors_wraps(raised, expected):
    with pytest.raises(expected) as info:
        with estimation_errors("TEST"):
            raise raised
    assert info.value.__cause__ is raised
    assert "TEST" in str(info.value)


def test_estimation_errors_wraps_validation_error():
    with pytest.raises(BalsynthEstimationError, match="validating TEST results"):
        with estimation_errors("TEST"):
            raise _validation_error()


@pytest.mark.parametrize(
    "raised",
    [BalsynthDataError("d"), BalsynthConfigError("c"), BalsynthEstimationError("e"), SearchExhaustedError("s")],
)
def test_estimation_errors_passes_library_errors_through(raised):
    with pytest.raises(type(raised)) as info:
        with estimation_errors("TEST"):
            raise raised
    assert info.value is raised


def test_prepare_design(small_panel):
    df, metadata = small_panel
    config = BalancerConfig(df=df, metadata=metadata, hyperparam=0.1)
    prepared, X, trt = prepare_design(config)
    assert X.shape == (21, 12)
    assert trt[0] == 1 and trt[1:].sum() == 0
    np.testing.assert_allclose(X[0], prepared["Z1"])


def _fit(feasible, converged):
    return FitResult(
        weights=np.ones(2) / 2, dual=np.zeros(1), primal_obj=0.0, dual_obj=0.0,
        l1_error=0.0, l2_error=1.5, linf_error=0.0, feasible=feasible, converged=converged, n_iter=1,
    )


def test_warn_if_infeasible():
    with pytest.warns(UserWarning, match="does not meet"):
        warn_if_infeasible("TEST", _fit(False, True))
    with pytest.warns(UserWarning, match="did not converge"):
        warn_if_infeasible("TEST", _fit(False, False))
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        warn_if_infeasible("TEST", _fit(True, True))
