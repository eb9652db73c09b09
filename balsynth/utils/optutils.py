# optutils.py

import logging
from typing import Optional, Dict, Any, Union, Sequence, List, Tuple

import cvxpy as cp
import numpy as np

from balsynth.config_models import SolverOptions, FitResult
from balsynth.exceptions import BalsynthConfigError, BalsynthEstimationError, DimensionError
from .opthelpers import OptHelpers, Link, Regularizer, resolve_link, resolve_regularizer

logger = logging.getLogger(__name__)

# Tolerance standing in for "no constraint" on a group, relative to its magnitude
UNCONSTRAINED_SCALE = 1e20

Hyperparam = Union[float, Sequence[float], np.ndarray, Dict[str, float]]
Groups = Union[None, Sequence[Sequence[int]], Dict[str, Sequence[int]]]


class Opt2:
    @staticmethod
    def SCopt(
        y: np.ndarray,
        X: np.ndarray,
        *,
        solver: str = "CLARABEL",
        tol_abs: float = 1e-8,
        tol_rel: float = 1e-8,
    ) -> Dict[str, Any]:
        """
        Synthetic Control Optimization (SCopt).

        Fits ``min_w ||y - X w||^2`` over the simplex ``w >= 0, sum(w) = 1``.

        Parameters
        ----------
        y : np.ndarray
            Target trajectory, shape (K,).
        X : np.ndarray
            Donor trajectories, shape (K, J).
        solver : str, default "CLARABEL"

        Returns
        -------
        Dict[str, Any]
            "problem" (the solved cvxpy problem), "weights" (np.ndarray) and
            "predictions" (``X @ weights``).

        Raises
        ------
        BalsynthEstimationError
            If the solver returns no solution.
        """
        J = X.shape[1]
        w = cp.Variable(J)
        objective = cp.Minimize(OptHelpers.squared_loss(y, X, w))
        constraints = OptHelpers.simplex_constraints(w)

        problem = cp.Problem(objective, constraints)
        solver_opts = {"tol_gap_abs": tol_abs, "tol_gap_rel": tol_rel} if solver == "CLARABEL" else {}
        problem.solve(solver=solver, verbose=False, **solver_opts)

        if w.value is None:
            raise BalsynthEstimationError(
                f"Synthetic control QP did not return a solution (status: {problem.status})."
            )

        # solver noise can leave tiny negative entries
        weights = np.maximum(np.asarray(w.value, dtype=float), 0.0)
        weights = weights / weights.sum()

        return {
            "problem": problem,
            "weights": weights,
            "predictions": X @ weights,
        }


def _as_opts(opts: Union[None, SolverOptions, Dict[str, Any]]) -> SolverOptions:
    if opts is None:
        return SolverOptions()
    if isinstance(opts, SolverOptions):
        return opts
    return SolverOptions(**opts)


def _resolve_groups(
    groups: Groups, hyperparam: Hyperparam, n_cols: int, regularizer: str
) -> Tuple[List[str], List[np.ndarray], np.ndarray]:
    """Turn ``groups``/``hyperparam`` into parallel lists of names, index arrays and tolerances."""
    if isinstance(groups, dict):
        names = [str(k) for k in groups]
        index_sets = [np.asarray(v, dtype=int) for v in groups.values()]
    elif groups is not None:
        index_sets = [np.asarray(g, dtype=int) for g in groups]
        names = [str(i) for i in range(len(index_sets))]
    else:
        names, index_sets = None, None

    if isinstance(hyperparam, dict):
        if names is None:
            raise DimensionError("A tolerance mapping requires named 'groups'.")
        missing = [n for n in names if n not in hyperparam]
        if missing:
            raise DimensionError(f"No tolerance given for groups: {missing}.")
        eps = np.array([hyperparam[n] for n in names], dtype=float)
    else:
        eps = np.atleast_1d(np.asarray(hyperparam, dtype=float)).ravel()

    if np.any(eps < 0) or np.any(np.isnan(eps)):
        raise BalsynthConfigError("Tolerances must be nonnegative.")

    if index_sets is None:
        if eps.shape[0] == 1:
            names, index_sets = ["all"], [np.arange(n_cols)]
        elif eps.shape[0] == n_cols:
            # one tolerance per column: every column is its own group
            names = [str(j) for j in range(n_cols)]
            index_sets = [np.array([j]) for j in range(n_cols)]
        else:
            raise DimensionError(
                f"Tolerance vector has length {eps.shape[0]}; expected 1 or {n_cols} "
                f"(one per column) for regularizer '{regularizer}'."
            )
    elif eps.shape[0] == 1 and len(index_sets) > 1:
        eps = np.repeat(eps, len(index_sets))
    elif eps.shape[0] != len(index_sets):
        raise DimensionError(
            f"Tolerance vector has length {eps.shape[0]} but there are {len(index_sets)} groups."
        )

    covered = np.concatenate(index_sets) if index_sets else np.array([], dtype=int)
    if covered.size and (covered.min() < 0 or covered.max() >= n_cols):
        raise DimensionError(f"Group indices must lie in [0, {n_cols}).")
    if covered.size != n_cols or np.unique(covered).size != n_cols:
        raise DimensionError("Groups must partition the columns of X.")

    return names, index_sets, eps


def column_groups(groups: Groups, hyperparam: Hyperparam, n_cols: int, regularizer: str = "l2") -> Dict[str, np.ndarray]:
    """Balance groups (name -> column indices) that a fit with these arguments uses."""
    names, index_sets, _ = _resolve_groups(groups, hyperparam, n_cols, regularizer)
    return dict(zip(names, index_sets))


def validate_design(X: np.ndarray, trt: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Check that ``X`` and ``trt`` line up; returns them as float / bool arrays."""
    X = np.asarray(X, dtype=float)
    trt = np.asarray(trt)
    if X.ndim != 2:
        raise DimensionError(f"X must be a 2-D matrix, got {X.ndim} dimension(s).")
    if trt.ndim != 1 or trt.shape[0] != X.shape[0]:
        raise DimensionError(
            f"trt has {trt.shape[0] if trt.ndim else 0} entries but X has {X.shape[0]} rows."
        )
    if X.shape[1] == 0:
        raise DimensionError("X has no columns to balance.")
    if not np.all(np.isin(trt, [0, 1])):
        raise DimensionError("trt must be a 0/1 indicator.")
    trt = trt.astype(bool)
    if not trt.any():
        raise DimensionError("trt has no treated rows.")
    if trt.all():
        raise DimensionError("trt has no control rows.")
    if not np.all(np.isfinite(X)):
        raise DimensionError("X contains non-finite entries.")
    return X, trt


class BalanceOpt:
    """
    Balancing weights from the dual of a constrained divergence minimisation.

    The primal problem finds nonnegative control weights closest (in the
    link's divergence) to a base measure such that the weighted control
    columns match the mean treated row within a per-group tolerance. Its dual

        min_theta  sum_i psi(x_i' theta + theta_0) - x1' theta - theta_0 + h(theta)

    is solved by accelerated proximal gradient (FISTA) with backtracking and
    adaptive restart; weights are recovered as ``psi'(eta)``.

    Parameters
    ----------
    link : {"logit", "linear", "pos-linear"}
    regularizer : {"l1", "l2", "linf", "ridge", "none"} or None
    normalized : bool, default True
        Constrain the weights to sum to one.
    opts : SolverOptions or dict, optional
        ``MAX_ITERS`` and ``EPS``.
    """

    def __init__(
        self,
        link: str = "logit",
        regularizer: Optional[str] = "l2",
        normalized: bool = True,
        opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    ) -> None:
        self.link: Link = resolve_link(link)(normalized=normalized)
        self.regularizer_cls = resolve_regularizer(regularizer)
        self.normalized = normalized
        self.opts = _as_opts(opts)
        # an explicit intercept enforces sum(w) = 1 unless the link profiles it out
        self.fit_intercept = normalized and not self.link.profiles_intercept

    # ---------- dual pieces ----------

    def _smooth(self, A: np.ndarray, target: np.ndarray, theta: np.ndarray) -> float:
        return self.link.psi(A @ theta) - target @ theta

    def _smooth_grad(self, A: np.ndarray, target: np.ndarray, theta: np.ndarray) -> Tuple[float, np.ndarray]:
        eta = A @ theta
        return self.link.psi(eta) - target @ theta, A.T @ self.link.weights(eta) - target

    def _prox(self, reg: Regularizer, v: np.ndarray, step: float) -> np.ndarray:
        if not self.fit_intercept:
            return reg.prox(v, step)
        out = v.copy()
        out[1:] = reg.prox(v[1:], step)
        return out

    def _penalty(self, reg: Regularizer, theta: np.ndarray) -> float:
        return reg.value(theta[1:] if self.fit_intercept else theta)

    def _fista(
        self, A: np.ndarray, target: np.ndarray, reg: Regularizer, floor: Optional[float] = None
    ) -> Tuple[np.ndarray, bool, int]:
        """Minimise the dual; stops early once the objective drops below ``floor``.

        A feasible primal keeps the dual objective at or above minus its
        optimal divergence, so falling below ``floor`` certifies that the
        balance constraints cannot be met.
        """
        max_iters, tol = self.opts.MAX_ITERS, self.opts.EPS
        theta = np.zeros(A.shape[1])
        y = theta.copy()
        t = 1.0
        step = 1.0 / max(np.linalg.norm(A, 2) ** 2, 1e-12)
        obj = self._smooth(A, target, theta) + self._penalty(reg, theta)

        converged = False
        n_iter = 0
        for n_iter in range(1, max_iters + 1):
            f_y, g_y = self._smooth_grad(A, target, y)
            while True:
                cand = self._prox(reg, y - step * g_y, step)
                diff = cand - y
                f_cand = self._smooth(A, target, cand)
                upper = f_y + g_y @ diff + (diff @ diff) / (2.0 * step)
                if f_cand <= upper + 1e-12 * max(1.0, abs(f_y)) or step < 1e-20:
                    break
                step *= 0.5

            if not np.all(np.isfinite(cand)):
                logger.debug("Dual iterate became non-finite after %d iterations.", n_iter)
                break

            obj_cand = f_cand + self._penalty(reg, cand)
            if obj_cand > obj and t > 1.0:
                # restart momentum from the last accepted iterate
                t = 1.0
                y = theta.copy()
                continue

            change = np.linalg.norm(cand - theta)
            t_next = 0.5 * (1.0 + np.sqrt(1.0 + 4.0 * t * t))
            y = cand + ((t - 1.0) / t_next) * (cand - theta)
            theta, obj, t = cand, obj_cand, t_next

            if floor is not None and obj < floor:
                logger.debug("Dual objective fell below %.6g after %d iterations: infeasible.", floor, n_iter)
                break

            if change <= tol * max(1.0, np.linalg.norm(theta)):
                converged = True
                break

        logger.debug(
            "Dual solver %s after %d iterations (objective %.6g).",
            "converged" if converged else "stopped",
            n_iter,
            obj,
        )
        return theta, converged, n_iter

    # ---------- public API ----------

    def fit(
        self,
        X: np.ndarray,
        trt: np.ndarray,
        hyperparam: Hyperparam,
        groups: Groups = None,
    ) -> FitResult:
        """
        Fit balancing weights for the control rows of ``X``.

        Parameters
        ----------
        X : np.ndarray
            Design matrix, units by columns.
        trt : np.ndarray
            0/1 treatment indicator per row. Treated rows are averaged into
            the balance target.
        hyperparam : float, sequence or dict
            Tolerance(s): a scalar, one per group, or one per column when
            ``groups`` is None. A dict maps group names to tolerances.
        groups : sequence of index arrays or dict, optional
            Partition of the columns into balance groups.

        Returns
        -------
        FitResult
            Infeasibility is reported through ``feasible``, never raised.
        """
        X, trt = validate_design(X, trt)
        names, index_sets, eps = _resolve_groups(groups, hyperparam, X.shape[1], self.regularizer_cls.name)
        reg = self.regularizer_cls(index_sets, eps)

        X0 = X[~trt]
        x1 = X[trt].mean(axis=0)
        if self.fit_intercept:
            A = np.hstack([np.ones((X0.shape[0], 1)), X0])
            target = np.concatenate([[1.0], x1])
        else:
            A, target = X0, x1

        bound = self.link.divergence_bound(X0.shape[0])
        floor = -(bound + self.opts.EPS) if bound is not None and reg.hard_constraint else None
        theta, converged, n_iter = self._fista(A, target, reg, floor)
        eta = A @ theta
        dual = theta[1:] if self.fit_intercept else theta
        intercept = float(theta[0]) if self.fit_intercept else 0.0
        if self.link.profiles_intercept:
            intercept = -float(self.link.psi(X0 @ dual))
            eta = eta + intercept

        weights = self.link.weights(eta)
        total = weights.sum()
        weights_ok = np.isfinite(total) and total > 0
        if self.normalized:
            weights = weights / total if weights_ok else np.full(X0.shape[0], 1.0 / X0.shape[0])

        residual = X0.T @ weights - x1
        group_err = reg.imbalance(residual)
        slack = np.sqrt(self.opts.EPS) * max(1.0, float(np.max(np.abs(x1))))
        if reg.hard_constraint:
            within = group_err <= reg.bounds + slack
        else:
            within = np.ones(len(names), dtype=bool)
        feasible = bool(converged and weights_ok and within.all())

        uniform_gap = np.linalg.norm(X0.mean(axis=0) - x1)
        l2_error = float(np.linalg.norm(residual))

        result = FitResult(
            weights=weights,
            dual=dual,
            intercept=intercept,
            base_weight=self.link.base_weight(X0.shape[0]),
            eta=eta,
            primal_obj=self.link.divergence(weights),
            dual_obj=float(self._smooth(A, target, theta) + self._penalty(reg, theta)),
            l1_error=float(np.abs(residual).sum()),
            l2_error=l2_error,
            linf_error=float(np.max(np.abs(residual))),
            group_errors={name: float(e) for name, e in zip(names, group_err)},
            group_feasible={
                name: bool(converged and weights_ok and ok) for name, ok in zip(names, within)
            },
            scaled_primal_obj=l2_error / uniform_gap if uniform_gap > 0 else None,
            feasible=feasible,
            converged=converged,
            n_iter=n_iter,
            link=self.link.name,
            regularizer=reg.name,
            hyperparam=hyperparam,
        )
        logger.debug(
            "Balancer fit (%s/%s): feasible=%s, l2 imbalance %.4g.",
            self.link.name, reg.name, feasible, l2_error,
        )
        return result

    def held_out_weights(self, X_new: np.ndarray, fit: FitResult) -> np.ndarray:
        """Weights for new control rows implied by a fitted dual, using this link."""
        X_new = np.atleast_2d(np.asarray(X_new, dtype=float))
        if X_new.shape[1] != fit.dual.shape[0]:
            raise DimensionError(
                f"New rows have {X_new.shape[1]} columns; the fitted dual has {fit.dual.shape[0]}."
            )
        eta = X_new @ fit.dual + (0.0 if self.link.profiles_intercept else fit.intercept)
        weights = self.link.weights(eta, base=fit.base_weight)
        if self.normalized:
            total = weights.sum()
            weights = weights / total if total > 0 else np.full(X_new.shape[0], 1.0 / X_new.shape[0])
        return weights


def fit_balancer_formatted(
    X: np.ndarray,
    trt: np.ndarray,
    link: str = "logit",
    regularizer: Optional[str] = "l2",
    hyperparam: Hyperparam = 0.0,
    normalized: bool = True,
    opts: Union[None, SolverOptions, Dict[str, Any]] = None,
    groups: Groups = None,
) -> FitResult:
    """Fit balancing weights on a formatted design; see :class:`BalanceOpt`."""
    return BalanceOpt(link=link, regularizer=regularizer, normalized=normalized, opts=opts).fit(
        X, trt, hyperparam, groups=groups
    )


def group_magnitudes(X0: np.ndarray, groups: Dict[str, Sequence[int]]) -> Dict[str, float]:
    """Scale of each column group: l2 deviation of the control block from its grand mean.

    Used to express "unconstrained" tolerances relative to a group's size.
    """
    mags = {}
    for name, idx in groups.items():
        block = X0[:, np.asarray(idx, dtype=int)]
        mag = float(np.sqrt(np.sum((block - block.mean()) ** 2)))
        mags[name] = mag if mag > 0 else 1.0
    return mags


def unconstrained_eps(magnitudes: Dict[str, float]) -> Dict[str, float]:
    """Sentinel tolerance per group that leaves it effectively unconstrained."""
    return {name: UNCONSTRAINED_SCALE * mag for name, mag in magnitudes.items()}
