import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
from sklearn.base import BaseEstimator
from sklearn.model_selection import KFold

from balsynth.config_models import CVResult, FitResult, SolverOptions
from balsynth.exceptions import BalsynthConfigError, BalsynthEstimationError, DimensionError
from balsynth.utils.optutils import BalanceOpt, validate_design

logger = logging.getLogger(__name__)

CV_METHODS = ("loo", "kfold", "bootstrap")


def parallel_map(func: Callable[[Any], Any], items: Iterable[Any], n_jobs: int = 1) -> List[Any]:
    """Apply ``func`` to every item, in order, on up to ``n_jobs`` threads.

    Work items must not share mutable state; exceptions from any item propagate.
    """
    items = list(items)
    if n_jobs is None or n_jobs <= 1 or len(items) <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=n_jobs) as pool:
        return list(pool.map(func, items))


def spawn_rngs(seed: Optional[int], n: int) -> List[np.random.Generator]:
    """``n`` independent generators derived deterministically from one root seed."""
    return [np.random.default_rng(child) for child in np.random.SeedSequence(seed).spawn(n)]


def _select(method: str, hyperparams: Sequence[float], errors: np.ndarray) -> CVResult:
    mean_errors = errors.mean(axis=0)
    ranked = np.where(np.isnan(mean_errors), np.inf, mean_errors)
    if not np.isfinite(ranked).any():
        raise BalsynthEstimationError(
            f"Cross-validation ({method}) produced no finite error for any hyperparameter."
        )
    # argmin returns the first minimiser, so ties go to the earlier hyperparameter
    best = int(np.argmin(ranked))
    logger.info("Cross-validation (%s) selected hyperparameter %s.", method, hyperparams[best])
    return CVResult(
        method=method,
        hyperparams=[float(h) for h in hyperparams],
        errors=errors,
        mean_errors=mean_errors,
        best_hyperparam=float(hyperparams[best]),
        best_index=best,
    )


def _check_grid(hyperparams: Sequence[float]) -> List[float]:
    grid = [float(h) for h in np.atleast_1d(hyperparams)]
    if not grid:
        raise BalsynthConfigError("Hyperparameter grid is empty.")
    if any(h < 0 for h in grid):
        raise BalsynthConfigError("Hyperparameters must be nonnegative.")
    return grid


def cv_di_bal(
    X: np.ndarray,
    trt: np.ndarray,
    hyperparams: Sequence[float],
    link: str = "logit",
    regularizer: Optional[str] = "l2",
    normalized: bool = True,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    n_jobs: int = 1,
) -> CVResult:
    """
    Leave-one-control-out cross-validation (Doudchenko and Imbens, 2017).

    Each control in turn plays the treated unit and is balanced on the
    remaining controls with the last column held out. The error is the gap
    between its held-out value and the weighted held-out values of the
    other controls.

    Returns
    -------
    CVResult
        ``errors`` holds squared errors, one row per control.
    """
    X, trt = validate_design(X, trt)
    grid = _check_grid(hyperparams)
    X0 = X[~trt]
    n_controls, n_cols = X0.shape
    if n_cols < 2:
        raise DimensionError("Leave-one-out CV needs at least two columns (one is held out).")
    if n_controls < 2:
        raise DimensionError("Leave-one-out CV needs at least two control rows.")

    opt = BalanceOpt(link=link, regularizer=regularizer, normalized=normalized, opts=opts)
    train, held_out = X0[:, :-1], X0[:, -1]

    def one_control(i: int) -> np.ndarray:
        pseudo_trt = np.zeros(n_controls, dtype=int)
        pseudo_trt[i] = 1
        others = np.delete(held_out, i)
        errs = np.empty(len(grid))
        for j, h in enumerate(grid):
            bal = opt.fit(train, pseudo_trt, h)
            errs[j] = (held_out[i] - others @ bal.weights) ** 2
        return errs

    errors = np.vstack(parallel_map(one_control, range(n_controls), n_jobs))
    return _select("loo", grid, errors)


def cv_kfold_bal(
    X: np.ndarray,
    trt: np.ndarray,
    n_folds: int,
    hyperparams: Sequence[float],
    link: str = "logit",
    regularizer: Optional[str] = "l2",
    normalized: bool = True,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    seed: Optional[int] = None,
    n_jobs: int = 1,
) -> CVResult:
    """
    K-fold cross-validation over the control rows.

    Controls are shuffled with a generator seeded by ``seed`` and split into
    ``n_folds`` folds. Weights are fitted on the treated rows plus K-1 folds;
    the fitted dual is mapped through the same link to weights on the
    held-out fold, which are scored by their squared imbalance against the
    treated mean.
    """
    X, trt = validate_design(X, trt)
    grid = _check_grid(hyperparams)
    X0, X1 = X[~trt], X[trt]
    x1 = X1.mean(axis=0)
    n_controls = X0.shape[0]
    if n_folds < 2 or n_folds > n_controls:
        raise BalsynthConfigError(f"n_folds must be in [2, {n_controls}], got {n_folds}.")

    order = np.random.default_rng(seed).permutation(n_controls)
    folds = [(order[tr], order[te]) for tr, te in KFold(n_splits=n_folds).split(order)]
    opt = BalanceOpt(link=link, regularizer=regularizer, normalized=normalized, opts=opts)

    def one_fold(fold) -> np.ndarray:
        train_idx, test_idx = fold
        X_fit = np.vstack([X1, X0[train_idx]])
        trt_fit = np.r_[np.ones(X1.shape[0], dtype=int), np.zeros(train_idx.shape[0], dtype=int)]
        ctrls = X0[test_idx]
        errs = np.empty(len(grid))
        for j, h in enumerate(grid):
            bal = opt.fit(X_fit, trt_fit, h)
            new_w = opt.held_out_weights(ctrls, bal)
            errs[j] = np.sum((x1 - ctrls.T @ new_w) ** 2)
        return errs

    errors = np.vstack(parallel_map(one_fold, folds, n_jobs))
    return _select("kfold", grid, errors)


def cv_wz_bal(
    X: np.ndarray,
    trt: np.ndarray,
    n_boot: int,
    hyperparams: Sequence[float],
    link: str = "logit",
    regularizer: Optional[str] = "l2",
    normalized: bool = True,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    seed: Optional[int] = None,
    n_jobs: int = 1,
) -> CVResult:
    """
    Bootstrap cross-validation (after Wang and Zubizarreta, 2018).

    Weights are fitted once per hyperparameter on the full data, then the
    control rows are resampled with replacement ``n_boot`` times; each
    resample is reweighted from the fitted dual and scored by its squared
    imbalance against the treated mean. Resample ``b`` draws from the
    ``b``-th stream spawned from ``seed``, so every hyperparameter is scored
    on the same resamples.
    """
    X, trt = validate_design(X, trt)
    grid = _check_grid(hyperparams)
    if n_boot < 1:
        raise BalsynthConfigError(f"n_boot must be positive, got {n_boot}.")
    X0 = X[~trt]
    x1 = X[trt].mean(axis=0)
    n_controls = X0.shape[0]
    resamples = [rng.integers(0, n_controls, size=n_controls) for rng in spawn_rngs(seed, n_boot)]
    opt = BalanceOpt(link=link, regularizer=regularizer, normalized=normalized, opts=opts)

    def one_hyperparam(h: float) -> np.ndarray:
        bal = opt.fit(X, trt, h)
        errs = np.empty(n_boot)
        for b, idx in enumerate(resamples):
            ctrls = X0[idx]
            new_w = opt.held_out_weights(ctrls, bal)
            errs[b] = np.sum((x1 - ctrls.T @ new_w) ** 2)
        return errs

    errors = np.column_stack(parallel_map(one_hyperparam, grid, n_jobs))
    return _select("bootstrap", grid, errors)


class BalancerCV(BaseEstimator):
    """
    Cross-validated balancing weights.

    Selects a hyperparameter by leave-one-out, K-fold or bootstrap
    cross-validation and refits on the full design with the winner.

    Parameters
    ----------
    hyperparams : sequence of float
        Grid to search; ties go to the earliest entry.
    method : {"loo", "kfold", "bootstrap"}, default "loo"
    link, regularizer, normalized, opts
        Passed to :class:`BalanceOpt`.
    n_folds : int, default 5
        Folds for ``method="kfold"``.
    n_boot : int, default 100
        Resamples for ``method="bootstrap"``.
    seed : int, optional
        Root seed for shuffling and resampling.
    n_jobs : int, default 1
        Worker threads.

    Attributes
    ----------
    cv_result_ : CVResult
    best_hyperparam_ : float
    fit_ : FitResult
        Refit on the full design.
    weights_ : np.ndarray
    """

    def __init__(self, *,
                 hyperparams=(0.0,),
                 method="loo",
                 link="logit",
                 regularizer="l2",
                 normalized=True,
                 n_folds=5,
                 n_boot=100,
                 seed=None,
                 n_jobs=1,
                 opts=None):
        self.hyperparams = hyperparams
        self.method = method
        self.link = link
        self.regularizer = regularizer
        self.normalized = normalized
        self.n_folds = n_folds
        self.n_boot = n_boot
        self.seed = seed
        self.n_jobs = n_jobs
        self.opts = opts

    def _cross_validate(self, X: np.ndarray, trt: np.ndarray) -> CVResult:
        common = dict(link=self.link, regularizer=self.regularizer,
                      normalized=self.normalized, opts=self.opts, n_jobs=self.n_jobs)
        if self.method == "loo":
            return cv_di_bal(X, trt, self.hyperparams, **common)
        if self.method == "kfold":
            return cv_kfold_bal(X, trt, self.n_folds, self.hyperparams, seed=self.seed, **common)
        if self.method == "bootstrap":
            return cv_wz_bal(X, trt, self.n_boot, self.hyperparams, seed=self.seed, **common)
        raise BalsynthConfigError(f"Unknown CV method '{self.method}'; expected one of {CV_METHODS}.")

    def fit(self, X: np.ndarray, trt: np.ndarray) -> "BalancerCV":
        self.cv_result_ = self._cross_validate(X, trt)
        self.best_hyperparam_ = self.cv_result_.best_hyperparam
        opt = BalanceOpt(link=self.link, regularizer=self.regularizer,
                         normalized=self.normalized, opts=self.opts)
        self.fit_: FitResult = opt.fit(X, trt, self.best_hyperparam_)
        self.weights_ = self.fit_.weights
        return self
