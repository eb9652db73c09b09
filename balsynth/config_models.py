from typing import List, Optional, Any, Dict, Union
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator
from balsynth.exceptions import BalsynthDataError, BalsynthConfigError


LINK_PATTERN = "^(logit|linear|pos-linear)$"
REGULARIZER_PATTERN = "^(l1|l2|linf|ridge|none)$"


# --- Shared configuration structs ---

class SolverOptions(BaseModel):
    """Iteration controls for the balancing-weight solver."""
    MAX_ITERS: int = Field(default=10000, ge=1, description="Maximum number of proximal gradient iterations.")
    EPS: float = Field(default=1e-6, gt=0, description="Relative step tolerance used to declare convergence.")

    model_config = {"extra": "forbid", "frozen": True}


class PanelColumns(BaseModel):
    """Column names of a long-format panel."""
    unit: str = Field(default="unit", description="Column identifying units.")
    time: str = Field(default="time", description="Column identifying time periods.")
    outcome: str = Field(default="outcome", description="Column holding the outcome value.")
    treated: str = Field(default="treated", description="Column flagging the treated unit(s) (0/1).")

    model_config = {"extra": "forbid", "frozen": True}


class PanelMetadata(BaseModel):
    """Read-only study metadata. Periods with ``time < t_int`` are pre-treatment."""
    t_int: Any = Field(..., description="First treated time period.")

    model_config = {"extra": "allow", "frozen": True}

    @field_validator("t_int")
    @classmethod
    def _t_int_present(cls, value: Any) -> Any:
        if value is None:
            raise BalsynthConfigError("metadata.t_int must be provided.")
        return value


class BaseEstimatorConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Includes common fields required by every estimator: the long-format
    panel, its column names and the intervention time.
    """
    df: pd.DataFrame = Field(..., description="Input panel data in long format.")
    metadata: PanelMetadata = Field(..., description="Study metadata; must contain the intervention time t_int.")
    cols: PanelColumns = Field(default_factory=PanelColumns, description="Column names of the panel.")
    trt_unit: Optional[Any] = Field(default=None, description="Treated unit id. Inferred from the treated column if None.")
    outcome_col: Optional[str] = Field(default=None, description="Column identifying outcome types. If None, a single outcome is assumed.")
    opts: SolverOptions = Field(default_factory=SolverOptions, description="Solver iteration controls.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid' # Forbid extra fields not defined in the model

    @model_validator(mode='after')
    def check_df_and_columns(self) -> "BaseEstimatorConfig":
        df = self.df
        cols = self.cols

        if df.empty:
            raise BalsynthDataError("Input DataFrame 'df' cannot be empty.")

        required_columns = {cols.unit, cols.time, cols.outcome, cols.treated}
        if self.outcome_col is not None:
            required_columns.add(self.outcome_col)
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise BalsynthDataError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )

        missing_info = {col: int(df[col].isna().sum()) for col in required_columns if df[col].isna().any()}
        if missing_info:
            details = ", ".join(f"{col}: {count}" for col, count in missing_info.items())
            raise BalsynthDataError(f"Missing values detected in required columns -> {details}.")

        if not (df[cols.time] < self.metadata.t_int).any():
            raise BalsynthDataError(
                f"No pre-treatment periods: every '{cols.time}' value is >= t_int ({self.metadata.t_int})."
            )
        return self


class BaseBalancerConfig(BaseEstimatorConfig):
    """Adds the balancing-weight knobs shared by the weighting estimators."""
    link: str = Field(default="logit", description="Link function for weights: 'logit', 'linear' or 'pos-linear'.", pattern=LINK_PATTERN)
    regularizer: str = Field(default="l2", description="Dual of the balance criterion: 'l1', 'l2', 'linf', 'ridge' or 'none'.", pattern=REGULARIZER_PATTERN)
    normalized: bool = Field(default=True, description="Whether the weights are constrained to sum to one.")

    @field_validator("regularizer", mode="before")
    @classmethod
    def _none_regularizer(cls, value: Any) -> Any:
        return "none" if value is None else value


class BalancerConfig(BaseBalancerConfig):
    """Configuration for the balancing-weights synthetic control (BALANCER)."""
    hyperparam: Union[float, List[float]] = Field(..., description="Regularization hyperparameter: a scalar or one tolerance per outcome group.")

    @field_validator("hyperparam")
    @classmethod
    def _nonnegative_hyperparam(cls, value: Union[float, List[float]]) -> Union[float, List[float]]:
        if np.any(np.asarray(value, dtype=float) < 0):
            raise BalsynthConfigError("'hyperparam' must be nonnegative.")
        return value


class MaxEntConfig(BaseEstimatorConfig):
    """Configuration for the maximum-entropy synthetic control (MAXENT)."""
    eps: Union[float, List[float], Dict[str, float]] = Field(default=0.0, description="Imbalance tolerance: scalar, one per outcome group (list or mapping), or one per pre-period when lasso=True.")
    lasso: bool = Field(default=False, description="Balance each pre-period separately (sup-norm) instead of each outcome group (l2).")

    @field_validator("eps")
    @classmethod
    def _nonnegative_eps(cls, value: Any) -> Any:
        values = list(value.values()) if isinstance(value, dict) else value
        if np.any(np.asarray(values, dtype=float) < 0):
            raise BalsynthConfigError("'eps' must be nonnegative.")
        return value


class BinSearchConfig(BaseBalancerConfig):
    """Configuration for the binary-search calibrated balancer (BINSEARCH)."""
    start: float = Field(..., ge=0, description="Smallest hyperparameter to try.")
    end: float = Field(..., ge=0, description="Largest hyperparameter to try.")
    by: float = Field(..., gt=0, description="Grid step.")

    @model_validator(mode="after")
    def check_grid(self) -> "BinSearchConfig":
        if self.start > self.end:
            raise BalsynthConfigError(f"'start' ({self.start}) must not exceed 'end' ({self.end}).")
        return self


class LexicalConfig(BaseEstimatorConfig):
    """
    Configuration for lexical tolerance calibration (LEXICAL).

    Modes
    -----
    - ``"groups"``: calibrate the groups of ``outcome_col`` in ``grp_order``.
    - ``"time"``: calibrate each pre-period, most recent first.
    - ``"recent"``: calibrate the periods at or after ``t_past`` before the older ones.
    """
    mode: str = Field(default="time", description="Which groups to calibrate: 'groups', 'time' or 'recent'.", pattern="^(groups|time|recent)$")
    grp_order: Optional[List[Any]] = Field(default=None, description="Lexical ordering of groups (mode='groups').")
    t_past: Optional[Any] = Field(default=None, description="Periods at or after t_past form the 'Recent' group (mode='recent').")
    by: float = Field(default=0.1, gt=0, description="Step size of the tolerance grid.")
    maxep: float = Field(default=1.0, gt=0, description="Largest tolerance to consider.")
    lowerep: Union[float, Dict[str, float]] = Field(default=0.0, description="Smallest tolerance to consider, globally or per group.")

    @model_validator(mode="after")
    def check_mode_params(self) -> "LexicalConfig":
        if self.mode == "groups":
            if self.outcome_col is None:
                raise BalsynthConfigError("mode='groups' requires 'outcome_col'.")
            if not self.grp_order:
                raise BalsynthConfigError("mode='groups' requires a non-empty 'grp_order'.")
        if self.mode == "recent" and self.t_past is None:
            raise BalsynthConfigError("mode='recent' requires 't_past'.")
        if self.mode in ("time", "recent") and self.outcome_col is not None:
            raise BalsynthConfigError(f"mode='{self.mode}' supports a single outcome; drop 'outcome_col'.")
        return self


class SepLassoConfig(BaseEstimatorConfig):
    """Configuration for the per-period (separate lasso) calibration (SEPLASSO)."""
    by: float = Field(default=0.1, gt=0, description="Step size of the tolerance grid, in standard deviations.")
    scale: bool = Field(default=True, description="Scale each period's tolerance by the control standard deviation.")
    maxep: float = Field(default=4.0, gt=0, description="Largest tolerance to consider, in standard deviations.")


class SVDSCConfig(BaseBalancerConfig):
    """Configuration for rank-reduced synthetic controls (SVDSC)."""
    method: str = Field(default="synth", description="'balance' fits balancing weights on the SVD basis, 'synth' fits simplex weights on the reduced trajectories.", pattern="^(balance|synth)$")
    r: int = Field(..., ge=0, description="Number of singular components to keep.")
    hyperparam: Optional[Union[float, List[float]]] = Field(default=None, description="Balancer hyperparameter (method='balance').")
    unit_mean: bool = Field(default=False, description="Remove unit means before the SVD and keep them as a column (method='synth').")

    @model_validator(mode="after")
    def check_method_params(self) -> "SVDSCConfig":
        if self.method == "balance":
            if self.hyperparam is None:
                raise BalsynthConfigError("method='balance' requires 'hyperparam'.")
            if self.r < 1:
                raise BalsynthConfigError("method='balance' requires r >= 1.")
        if self.method == "synth" and self.r == 0 and not self.unit_mean:
            raise BalsynthConfigError("r=0 is only meaningful with unit_mean=True.")
        return self


class MCPConfig(BaseEstimatorConfig):
    """Configuration for the nuclear-norm matrix completion outcome model (MCP)."""
    method: str = Field(default="svd", description="'svd' for soft-thresholded SVD, 'als' for alternating ridge regression.", pattern="^(svd|als)$")
    lam: float = Field(default=0.0, ge=0, description="Nuclear-norm penalty.")
    max_rank: Optional[int] = Field(default=None, ge=1, description="Maximum rank of the fitted matrix. Defaults to min(units, periods) - 1.")
    seed: Optional[int] = Field(default=None, description="Seed for the ALS initialisation.")


class BalancerCVConfig(BaseBalancerConfig):
    """Configuration for cross-validated balancing weights (BALANCERCV)."""
    hyperparams: List[float] = Field(..., min_length=1, description="Hyperparameter grid, searched in order (ties go to the first).")
    method: str = Field(default="loo", description="'loo' (leave one control out), 'kfold' or 'bootstrap'.", pattern="^(loo|kfold|bootstrap)$")
    n_folds: int = Field(default=5, ge=2, description="Number of folds (method='kfold').")
    n_boot: int = Field(default=100, ge=1, description="Number of bootstrap resamples (method='bootstrap').")
    seed: Optional[int] = Field(default=None, description="Root seed for fold shuffling and bootstrap resampling.")
    n_jobs: int = Field(default=1, ge=1, description="Worker threads for the cross-validation map.")

    @field_validator("hyperparams")
    @classmethod
    def _nonnegative_grid(cls, value: List[float]) -> List[float]:
        if any(h < 0 for h in value):
            raise BalsynthConfigError("All hyperparameters must be nonnegative.")
        return value


# --- Pydantic Models for solver and search outputs ---

class FitResult(BaseModel):
    """
    Output of one balancing-weight solve. Immutable: callers aggregate fit
    results, they never edit them (use ``model_copy(update=...)`` to attach
    the imputed path).
    """
    weights: np.ndarray                       # one nonnegative weight per control row
    dual: np.ndarray                          # Lagrange multipliers of the balance constraints
    intercept: float = 0.0                    # unpenalized normalization multiplier
    base_weight: float = 0.0                  # per-unit base weight of the fitted controls (linear link)
    eta: Optional[np.ndarray] = None          # linear predictor of each control row
    primal_obj: float                         # divergence of the weights
    dual_obj: float                           # value of the dual program
    l1_error: float
    l2_error: float
    linf_error: float
    group_errors: Dict[str, float] = Field(default_factory=dict)  # dual-norm imbalance per group
    group_feasible: Dict[str, bool] = Field(default_factory=dict)
    scaled_primal_obj: Optional[float] = None # l2 imbalance relative to uniform weights
    feasible: bool
    converged: bool
    n_iter: int
    link: Optional[str] = None
    regularizer: Optional[str] = None
    hyperparam: Optional[Any] = None
    imputed: Optional[np.ndarray] = None      # counterfactual path for the treated unit

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class SearchResult(BaseModel):
    """Result of a scalar binary search."""
    param: float = Field(..., description="Smallest feasible tolerance on the grid.")
    grid: np.ndarray = Field(..., description="Candidate tolerances that were searched.")
    n_evaluations: int = Field(..., description="Number of feasibility oracle calls.")

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class LexicalSearchResult(BaseModel):
    """Per-group tolerances found by lexical calibration."""
    eps: Dict[Any, float] = Field(..., description="Tolerance per group, in lexical order. Unresolved groups keep their sentinel.")
    resolved: List[Any] = Field(default_factory=list, description="Groups whose minimal feasible tolerance was found.")
    unresolved: List[Any] = Field(default_factory=list, description="Groups whose search failed or was never reached.")

    model_config = {"frozen": True}

    @property
    def complete(self) -> bool:
        return not self.unresolved


class CVResult(BaseModel):
    """Cross-validation errors for a hyperparameter grid."""
    method: str
    hyperparams: List[float]
    errors: np.ndarray = Field(..., description="Errors, shape (n_splits, n_hyperparams).")
    mean_errors: np.ndarray = Field(..., description="Mean squared error per hyperparameter.")
    best_hyperparam: float
    best_index: int

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


# --- Pydantic Models for Standardized Estimator Results ---

class EffectsResults(BaseModel):
    """Standardized model for reporting treatment effects."""
    att: Optional[float] = Field(default=None, description="Average Treatment Effect on the Treated.")
    att_percent: Optional[float] = Field(default=None, description="Percentage Average Treatment Effect on the Treated.")
    additional_effects: Optional[Dict[str, Any]] = Field(default=None, description="Dictionary for other estimator-specific effects.")

    class Config:
        extra = 'allow'

class FitDiagnosticsResults(BaseModel):
    """Standardized model for reporting goodness-of-fit diagnostics."""
    rmse_pre: Optional[float] = Field(default=None, description="Root Mean Squared Error in the pre-treatment period.")
    r_squared_pre: Optional[float] = Field(default=None, description="R-squared value in the pre-treatment period.")
    rmse_post: Optional[float] = Field(default=None, description="Standard deviation of the post-treatment gap.")
    primal_obj: Optional[float] = Field(default=None, description="Primal objective of the weight fit.")
    scaled_primal_obj: Optional[float] = Field(default=None, description="Primal objective relative to uniform weights.")
    additional_metrics: Optional[Dict[str, Any]] = Field(default=None, description="Dictionary for other fit metrics.")

    class Config:
        extra = 'allow'

class TimeSeriesResults(BaseModel):
    """Standardized model for reporting key time series vectors."""
    observed_outcome: Optional[np.ndarray] = Field(default=None, description="Observed outcome vector for the treated unit.")
    counterfactual_outcome: Optional[np.ndarray] = Field(default=None, description="Estimated counterfactual outcome vector.")
    estimated_gap: Optional[np.ndarray] = Field(default=None, description="Estimated treatment effect vector (observed - counterfactual).")
    time_periods: Optional[np.ndarray] = Field(default=None, description="Array of time periods corresponding to the series.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'allow'

class WeightsResults(BaseModel):
    """Standardized model for reporting donor weights."""
    donor_weights: Optional[Dict[str, float]] = Field(default=None, description="Dictionary mapping donor unit names/IDs to their weights.")
    summary_stats: Optional[Dict[str, Any]] = Field(default=None, description="Summary statistics about weights (e.g., cardinality).")

    class Config:
        extra = 'allow'

class MethodDetailsResults(BaseModel):
    """Standardized model for reporting details about the specific estimation method/variant used."""
    method_name: Optional[str] = Field(default=None, description="Name of the specific method or variant used.")
    parameters_used: Optional[Dict[str, Any]] = Field(default=None, description="Key parameters used for this specific result set.")

    class Config:
        extra = 'allow'

class BaseEstimatorResults(BaseModel):
    """
    Base Pydantic model for standardized estimator `fit()` method results.
    """
    effects: Optional[EffectsResults] = None
    fit_diagnostics: Optional[FitDiagnosticsResults] = None
    time_series: Optional[TimeSeriesResults] = None
    weights: Optional[WeightsResults] = None
    method_details: Optional[MethodDetailsResults] = None

    feasible: Optional[bool] = Field(default=None, description="Whether the final weight fit met its balance constraints.")
    fit: Optional[FitResult] = Field(default=None, description="Joint weight fit (all outcome groups).")
    group_fits: Optional[Dict[str, FitResult]] = Field(default=None, description="One fit per outcome level, in outcome-level order.")
    outcomes: Optional[pd.DataFrame] = Field(default=None, description="Input rows plus the appended synthetic-control rows.")
    search: Optional[Union[SearchResult, LexicalSearchResult]] = Field(default=None, description="Tolerance search that produced the final hyperparameter.")
    cv: Optional[CVResult] = Field(default=None, description="Cross-validation that produced the final hyperparameter.")

    additional_outputs: Optional[Dict[str, Any]] = Field(default=None, description="Dictionary for any other outputs specific to the estimator not covered by standard fields.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'
