import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError
from typing import Dict, Any

from balsynth.exceptions import BalsynthDataError, BalsynthConfigError
from balsynth.config_models import (
    BaseEstimatorConfig,
    BalancerConfig,
    MaxEntConfig,
    BinSearchConfig,
    LexicalConfig,
    SVDSCConfig,
    MCPConfig,
    BalancerCVConfig,
    PanelMetadata,
    SolverOptions,
    FitResult,
    LexicalSearchResult,
)


@pytest.fixture
def sample_df() -> pd.DataFrame:
    return pd.DataFrame({
        "unit": [1, 1, 2, 2, 3, 3],
        "time": [1, 2, 1, 2, 1, 2],
        "outcome": [10.0, 12.0, 15.0, 16.0, 11.0, 13.0],
        "treated": [0, 1, 0, 0, 0, 0],
        "kind": ["x", "x", "x", "x", "x", "x"],
    })


@pytest.fixture
def base_config_data(sample_df: pd.DataFrame) -> Dict[str, Any]:
    return {"df": sample_df, "metadata": {"t_int": 2}}


def test_base_estimator_config_valid(base_config_data):
    config = BaseEstimatorConfig(**base_config_data)
    assert config.metadata.t_int == 2
    assert config.cols.unit == "unit"
    assert config.outcome_col is None
    assert config.opts.MAX_ITERS == 10000
    assert config.opts.EPS == 1e-6


def test_base_estimator_config_empty_df():
    with pytest.raises(BalsynthDataError, match="cannot be empty"):
        BaseEstimatorConfig(df=pd.DataFrame(), metadata={"t_int": 2})


def test_base_estimator_config_missing_column(base_config_data):
    base_config_data["df"] = base_config_data["df"].drop(columns=["treated"])
    with pytest.raises(BalsynthDataError, match="treated"):
        BaseEstimatorConfig(**base_config_data)


def test_base_estimator_config_missing_outcome_col(base_config_data):
    with pytest.raises(BalsynthDataError, match="not_there"):
        BaseEstimatorConfig(**base_config_data, outcome_col="not_there")


def test_base_estimator_config_missing_values(base_config_data):
    base_config_data["df"].loc[0, "outcome"] = np.nan
    with pytest.raises(BalsynthDataError, match="Missing values"):
        BaseEstimatorConfig(**base_config_data)


def test_base_estimator_config_no_pre_periods(base_config_data):
    base_config_data["metadata"] = {"t_int": 1}
    with pytest.raises(BalsynthDataError, match="No pre-treatment periods"):
        BaseEstimatorConfig(**base_config_data)


def test_base_estimator_config_extra_field(base_config_data):
    with pytest.raises(ValidationError):
        BaseEstimatorConfig(**base_config_data, not_a_field=1)


def test_panel_metadata_requires_t_int():
    with pytest.raises(BalsynthConfigError):
        PanelMetadata(t_int=None)


def test_panel_metadata_keeps_extra_keys():
    meta = PanelMetadata(t_int=5, trt_unit=0)
    assert meta.trt_unit == 0


@pytest.mark.parametrize("field, value", [("MAX_ITERS", 0), ("EPS", 0.0)])
def test_solver_options_bounds(field, value):
    with pytest.raises(ValidationError):
        SolverOptions(**{field: value})


def test_balancer_config_defaults(base_config_data):
    config = BalancerConfig(**base_config_data, hyperparam=0.5)
    assert config.link == "logit"
    assert config.regularizer == "l2"
    assert config.normalized is True


def test_balancer_config_none_regularizer(base_config_data):
    config = BalancerConfig(**base_config_data, hyperparam=0.5, regularizer=None)
    assert config.regularizer == "none"


@pytest.mark.parametrize("link", ["probit", "LOGIT", ""])
def test_balancer_config_bad_link(base_config_data, link):
    with pytest.raises(ValidationError):
        BalancerConfig(**base_config_data, hyperparam=0.5, link=link)


@pytest.mark.parametrize("hyperparam", [-1.0, [0.5, -0.1]])
def test_balancer_config_negative_hyperparam(base_config_data, hyperparam):
    with pytest.raises(BalsynthConfigError):
        BalancerConfig(**base_config_data, hyperparam=hyperparam)


def test_maxent_config_negative_eps_mapping(base_config_data):
    with pytest.raises(BalsynthConfigError):
        MaxEntConfig(**base_config_data, eps={"a": 1.0, "b": -2.0})


def test_binsearch_config_start_after_end(base_config_data):
    with pytest.raises(BalsynthConfigError, match="must not exceed"):
        BinSearchConfig(**base_config_data, start=2.0, end=1.0, by=0.1)


def test_lexical_config_groups_mode_requirements(base_config_data):
    with pytest.raises(BalsynthConfigError, match="outcome_col"):
        LexicalConfig(**base_config_data, mode="groups", grp_order=["x"])
    with pytest.raises(BalsynthConfigError, match="grp_order"):
        LexicalConfig(**base_config_data, mode="groups", outcome_col="kind")
    config = LexicalConfig(**base_config_data, mode="groups", outcome_col="kind", grp_order=["x"])
    assert config.grp_order == ["x"]


def test_lexical_config_recent_needs_t_past(base_config_data):
    with pytest.raises(BalsynthConfigError, match="t_past"):
        LexicalConfig(**base_config_data, mode="recent")


def test_lexical_config_time_mode_single_outcome(base_config_data):
    with pytest.raises(BalsynthConfigError, match="single outcome"):
        LexicalConfig(**base_config_data, mode="time", outcome_col="kind")


def test_svdsc_config_balance_needs_hyperparam(base_config_data):
    with pytest.raises(BalsynthConfigError, match="hyperparam"):
        SVDSCConfig(**base_config_data, method="balance", r=1)
    with pytest.raises(BalsynthConfigError, match="r >= 1"):
        SVDSCConfig(**base_config_data, method="balance", r=0, hyperparam=1.0)


def test_svdsc_config_zero_rank_needs_unit_mean(base_config_data):
    with pytest.raises(BalsynthConfigError, match="unit_mean"):
        SVDSCConfig(**base_config_data, r=0)
    assert SVDSCConfig(**base_config_data, r=0, unit_mean=True).r == 0


def test_mcp_config_method_pattern(base_config_data):
    with pytest.raises(ValidationError):
        MCPConfig(**base_config_data, method="nuclear")


def test_balancercv_config_grid(base_config_data):
    with pytest.raises(ValidationError):
        BalancerCVConfig(**base_config_data, hyperparams=[])
    with pytest.raises(BalsynthConfigError):
        BalancerCVConfig(**base_config_data, hyperparams=[0.1, -0.1])


def test_fit_result_is_frozen():
    fit = FitResult(
        weights=np.ones(2) / 2, dual=np.zeros(1), primal_obj=0.0, dual_obj=0.0,
        l1_error=0.0, l2_error=0.0, linf_error=0.0, feasible=True, converged=True, n_iter=1,
    )
    with pytest.raises(ValidationError):
        fit.feasible = False
    copied = fit.model_copy(update={"imputed": np.arange(3.0)})
    assert fit.imputed is None
    assert np.array_equal(copied.imputed, np.arange(3.0))


def test_lexical_search_result_complete():
    assert LexicalSearchResult(eps={"a": 0.1}, resolved=["a"]).complete
    assert not LexicalSearchResult(eps={"a": 0.1, "b": 1e20}, resolved=["a"], unresolved=["b"]).complete
