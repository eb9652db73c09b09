import logging
from typing import Optional, Tuple, Dict, Any, Union

import numpy as np

from balsynth.config_models import SolverOptions, FitResult
from balsynth.exceptions import (
    BalsynthDataError,
    BalsynthConfigError,
    BalsynthEstimationError,
)
from balsynth.utils.datautils import KEY_Z0, KEY_Z1
from balsynth.utils.optutils import Opt2

logger = logging.getLogger(__name__)


def shrink(input_array: np.ndarray, threshold: float) -> np.ndarray:
    """
    Apply soft thresholding to array elements.

    Parameters
    ----------
    input_array : np.ndarray
        Input array or matrix to which soft thresholding will be applied
        element-wise.
    threshold : float
        The threshold value for shrinkage. Must be non-negative.

    Returns
    -------
    np.ndarray
        :math:`\\text{sign}(X) \\cdot \\max(|X| - \\text{threshold}, 0)`, same shape as `input_array`.
    """
    if not isinstance(input_array, np.ndarray):
        raise BalsynthDataError("Input `input_array` must be a NumPy array.")
    if not isinstance(threshold, (float, int)):
        raise BalsynthConfigError("Input `threshold` must be a float or integer.")
    if threshold < 0:
        raise BalsynthConfigError("Input `threshold` must be non-negative.")

    return np.sign(input_array) * np.maximum(np.abs(input_array) - threshold, 0.0)


def SVT(input_matrix: np.ndarray, threshold_value: float, max_rank: Optional[int] = None) -> np.ndarray:  # Singular Value Thresholding (soft)
    """
    Perform Singular Value Thresholding matrix operation.

    Parameters
    ----------
    input_matrix : np.ndarray
        The input matrix to be processed. Shape (n_rows, n_cols).
    threshold_value : float
        Soft threshold applied to the singular values (see `shrink`).
    max_rank : int, optional
        Keep at most this many singular components after thresholding.

    Returns
    -------
    np.ndarray
        ``U @ diag(shrink(s, threshold_value)) @ Vt``, truncated to `max_rank`.
    """
    if not isinstance(input_matrix, np.ndarray):
        raise BalsynthDataError("Input `input_matrix` must be a NumPy array.")
    if input_matrix.ndim != 2:
        raise BalsynthDataError("Input `input_matrix` must be a 2D array.")

    try:
        left_singular_vectors, singular_values, right_singular_vectors_transposed = np.linalg.svd(
            input_matrix, full_matrices=False
        )
    except np.linalg.LinAlgError as e:
        raise BalsynthEstimationError(f"SVD computation failed in SVT: {e}") from e

    shrunk = shrink(singular_values, float(threshold_value))
    if max_rank is not None:
        shrunk[max_rank:] = 0.0
    return (left_singular_vectors * shrunk) @ right_singular_vectors_transposed


# =======================
# Rank reduction of pre-period trajectories
# =======================

def svd_project(
    Z1: np.ndarray, Z0: np.ndarray, r: int, unit_mean: bool = False
) -> Dict[str, np.ndarray]:
    """
    Reduce treated and control pre-period trajectories to ``r`` SVD scores.

    The units-by-periods matrix ``[Z1; Z0']`` is centred by column (period)
    and, optionally, each unit's mean level is removed. The leading ``r``
    columns of ``U @ diag(d)`` form the reduced design; removed unit means are
    prepended as an extra column.

    Parameters
    ----------
    Z1 : np.ndarray
        Treated pre-period outcomes, shape (T0,).
    Z0 : np.ndarray
        Control pre-period outcomes, shape (T0, J).
    r : int
        Number of singular components to keep (0 <= r <= min(J + 1, T0)).
    unit_mean : bool, default False
        Remove per-unit means before the SVD and keep them as a column.

    Returns
    -------
    Dict[str, np.ndarray]
        "low_dim" : reduced design, units by components, treated unit first.
        "X1" / "X0" : reduced treated vector and reduced control matrix
            (components by controls), the inputs of a Synth-style fit.
        "scores" / "components" : ``(U * d)[:, :r]`` and ``Vt[:r]``, whose product
            reconstructs the centred matrix when ``r`` is full rank.
        "centred" : the centred (and unit-demeaned) matrix that was decomposed.
        "unit_means" : removed unit means (zeros when `unit_mean` is False).
        "singular_values" : all singular values.
    """
    Z1 = np.asarray(Z1, dtype=float).ravel()
    Z0 = np.asarray(Z0, dtype=float)
    if Z0.ndim != 2 or Z0.shape[0] != Z1.shape[0]:
        raise BalsynthDataError(
            f"Z0 must have one row per pre-period ({Z1.shape[0]}); got shape {Z0.shape}."
        )

    comb = np.vstack([Z1[None, :], Z0.T])
    comb = comb - comb.mean(axis=0)
    max_r = min(comb.shape)
    if not isinstance(r, (int, np.integer)) or r < 0 or r > max_r:
        raise BalsynthConfigError(f"r must be an integer in [0, {max_r}], got {r}.")
    if r == 0 and not unit_mean:
        raise BalsynthConfigError("r=0 keeps no components unless unit_mean=True.")

    unit_means = np.zeros(comb.shape[0])
    if unit_mean:
        unit_means = comb.mean(axis=1)
        comb = comb - unit_means[:, None]

    try:
        U, d, Vt = np.linalg.svd(comb, full_matrices=False)
    except np.linalg.LinAlgError as e:
        raise BalsynthEstimationError(f"SVD of pre-period outcomes failed: {e}") from e

    scores = (U * d)[:, :r]
    low_dim = np.column_stack([unit_means, scores]) if unit_mean else scores

    return {
        "low_dim": low_dim,
        "X1": low_dim[0],
        "X0": low_dim[1:].T,
        "scores": scores,
        "components": Vt[:r],
        "centred": comb,
        "unit_means": unit_means,
        "singular_values": d,
    }


def svd_basis(X: np.ndarray, r: int) -> np.ndarray:
    """Leading ``r`` left singular vectors of the raw design ``X`` (units by columns)."""
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise BalsynthDataError("Input `X` must be a 2D array.")
    if r < 1 or r > min(X.shape):
        raise BalsynthConfigError(f"r must be in [1, {min(X.shape)}], got {r}.")
    try:
        U, _, _ = np.linalg.svd(X, full_matrices=False)
    except np.linalg.LinAlgError as e:
        raise BalsynthEstimationError(f"SVD of design matrix failed: {e}") from e
    return U[:, :r]


def synth_qp(x1: np.ndarray, X0: np.ndarray) -> Dict[str, Any]:
    """Nonnegative weights summing to one that minimise ``||x1 - X0 w||^2``."""
    return Opt2.SCopt(np.asarray(x1, dtype=float), np.asarray(X0, dtype=float))


def fit_svd_formatted(data: Dict[str, Any], r: int, unit_mean: bool = False) -> FitResult:
    """
    Synth-style fit on SVD-reduced pre-period trajectories.

    ``primal_obj`` is the l2 distance between the synthetic and treated
    pre-period paths on the original scale; ``scaled_primal_obj`` divides it
    by the same distance under uniform weights.
    """
    Z0, Z1 = data[KEY_Z0], data[KEY_Z1]
    reduced = svd_project(Z1, Z0, r, unit_mean)
    qp = synth_qp(reduced["X1"], reduced["X0"])
    weights = qp["weights"]

    residual = Z0 @ weights - Z1
    primal_obj = float(np.linalg.norm(residual))
    unif_primal_obj = float(np.linalg.norm(Z0.mean(axis=1) - Z1))
    problem = qp["problem"]
    converged = problem.status == "optimal"
    if not converged:
        logger.warning("Reduced Synth QP finished with status %s.", problem.status)

    return FitResult(
        weights=weights,
        dual=np.zeros(0),
        primal_obj=primal_obj,
        dual_obj=float(problem.value),
        l1_error=float(np.abs(residual).sum()),
        l2_error=primal_obj,
        linf_error=float(np.max(np.abs(residual))),
        scaled_primal_obj=primal_obj / unif_primal_obj if unif_primal_obj > 0 else None,
        feasible=converged,
        converged=converged,
        n_iter=int(problem.solver_stats.num_iters or 0),
        hyperparam=r,
    )


# =======================
# Nuclear-norm matrix completion
# =======================

def _completion_inputs(Y: np.ndarray, mask: np.ndarray, lam: float) -> Tuple[np.ndarray, np.ndarray]:
    Y = np.asarray(Y, dtype=float)
    mask = np.asarray(mask, dtype=bool)
    if Y.ndim != 2 or mask.shape != Y.shape:
        raise BalsynthDataError(f"Y and mask must be 2D arrays of the same shape; got {Y.shape} and {mask.shape}.")
    if lam < 0:
        raise BalsynthConfigError("Nuclear-norm penalty `lam` must be non-negative.")
    if not mask.any():
        raise BalsynthDataError("Mask leaves no observed entries to fit.")
    if not np.all(np.isfinite(Y[mask])):
        raise BalsynthDataError("Observed entries of Y must be finite.")
    return Y, mask


def soft_impute(
    Y: np.ndarray,
    mask: np.ndarray,
    lam: float,
    max_rank: Optional[int] = None,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
) -> Tuple[np.ndarray, bool, int]:
    """
    Nuclear-norm matrix completion by iterated soft-thresholded SVD.

    Iterates ``L <- SVT(P_obs(Y) + P_miss(L), lam)`` (Mazumder, Hastie and
    Tibshirani, 2010), optionally truncating each iterate to `max_rank`.

    Parameters
    ----------
    Y : np.ndarray
        Outcome matrix; entries outside `mask` are ignored.
    mask : np.ndarray
        Boolean matrix, True where `Y` is observed.
    lam : float
        Nuclear-norm penalty.
    max_rank : int, optional
        Maximum rank of each iterate.
    opts : SolverOptions or dict, optional
        ``MAX_ITERS`` and relative Frobenius tolerance ``EPS``.

    Returns
    -------
    Tuple[np.ndarray, bool, int]
        Completed matrix, whether the iteration converged, iterations used.
    """
    Y, mask = _completion_inputs(Y, mask, lam)
    opts = opts if isinstance(opts, SolverOptions) else SolverOptions(**(opts or {}))

    L = np.zeros_like(Y)
    converged = False
    n_iter = 0
    for n_iter in range(1, opts.MAX_ITERS + 1):
        L_new = SVT(np.where(mask, Y, L), lam, max_rank)
        change = np.linalg.norm(L_new - L)
        L = L_new
        if change <= opts.EPS * max(1.0, np.linalg.norm(L)):
            converged = True
            break

    logger.debug("soft_impute %s after %d iterations.", "converged" if converged else "stopped", n_iter)
    return L, converged, n_iter


def als_impute(
    Y: np.ndarray,
    mask: np.ndarray,
    lam: float,
    max_rank: int,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    seed: Optional[int] = None,
) -> Tuple[np.ndarray, bool, int]:
    """
    Low-rank completion ``Y ~ A B'`` by alternating ridge regressions.

    Minimises ``||P_obs(Y - A B')||_F^2 + lam (||A||_F^2 + ||B||_F^2)`` with
    ``A`` (rows by `max_rank`) and ``B`` (columns by `max_rank`). Each row of
    ``A`` is a ridge fit on the observed entries of its row, then likewise
    for ``B``.

    Returns
    -------
    Tuple[np.ndarray, bool, int]
        ``A @ B.T``, whether the iteration converged, iterations used.
    """
    Y, mask = _completion_inputs(Y, mask, lam)
    if max_rank is None or max_rank < 1:
        raise BalsynthConfigError("`max_rank` must be a positive integer for ALS.")
    opts = opts if isinstance(opts, SolverOptions) else SolverOptions(**(opts or {}))
    rng = np.random.default_rng(seed)

    n_rows, n_cols = Y.shape
    scale = np.sqrt(np.mean(Y[mask] ** 2) / max_rank) or 1.0
    A = rng.normal(scale=scale, size=(n_rows, max_rank))
    B = rng.normal(scale=scale, size=(n_cols, max_rank))
    ridge = np.sqrt(lam) * np.eye(max_rank)
    zeros = np.zeros(max_rank)

    def _ridge_rows(target: np.ndarray, obs: np.ndarray, fixed: np.ndarray) -> np.ndarray:
        out = np.zeros((target.shape[0], max_rank))
        for i in range(target.shape[0]):
            design = np.vstack([fixed[obs[i]], ridge])
            response = np.concatenate([target[i, obs[i]], zeros])
            out[i] = np.linalg.lstsq(design, response, rcond=None)[0]
        return out

    fitted = A @ B.T
    converged = False
    n_iter = 0
    for n_iter in range(1, opts.MAX_ITERS + 1):
        A = _ridge_rows(Y, mask, B)
        B = _ridge_rows(Y.T, mask.T, A)
        new_fit = A @ B.T
        change = np.linalg.norm(new_fit - fitted)
        fitted = new_fit
        if change <= opts.EPS * max(1.0, np.linalg.norm(fitted)):
            converged = True
            break

    logger.debug("als_impute %s after %d iterations.", "converged" if converged else "stopped", n_iter)
    return fitted, converged, n_iter
