import cvxpy as cp
import numpy as np
from typing import Optional, List, Sequence, Dict, Type
from scipy.special import logsumexp, softmax, xlogy

from balsynth.exceptions import BalsynthConfigError

# exp() overflows float64 just above this exponent
_MAX_EXPONENT = np.log(np.finfo(np.float64).max) - 1.0


class OptHelpers:
    """
    Collection of helper functions for building objectives and constraints
    in synthetic control weight problems solved with cvxpy.

    These helpers do not solve optimization problems themselves.
    They return CVXPY expressions or constraint lists to be assembled
    by a higher-level solver (e.g., Opt2.SCopt).
    """

    @staticmethod
    def squared_loss(y: np.ndarray, X: np.ndarray, w: cp.Variable) -> cp.Expression:
        """
        Squared-error loss ``||y - X w||^2``.

        Parameters
        ----------
        y : np.ndarray
            Target vector of shape (K,).
        X : np.ndarray
            Donor matrix of shape (K, J).
        w : cp.Variable
            Weight vector of shape (J,).
        """
        return cp.sum_squares(y - X @ w)

    @staticmethod
    def simplex_constraints(w: cp.Variable) -> List:
        """Constraints enforcing w >= 0 and sum(w) == 1."""
        return [w >= 0, cp.sum(w) == 1]


# =======================
# Links
# =======================

class Link:
    """
    Map from the linear predictor ``eta = X theta`` of each control unit to its
    unnormalized weight. ``psi`` is the convex conjugate of the primal
    divergence, so ``weights`` is its gradient.
    """

    name: str = ""
    # True when normalization is absorbed into psi itself (no intercept needed)
    profiles_intercept: bool = False

    def __init__(self, normalized: bool = True) -> None:
        self.normalized = normalized

    def base_weight(self, n: int) -> float:
        """Weight of each of ``n`` units under the base measure the divergence is centred on."""
        return 0.0

    def divergence_bound(self, n: int) -> Optional[float]:
        """Largest divergence of any weight vector on the simplex of ``n`` units.

        None when the weights are not normalized and no such bound exists.
        """
        return None

    def psi(self, eta: np.ndarray) -> float:
        raise NotImplementedError

    def weights(self, eta: np.ndarray, base: Optional[float] = None) -> np.ndarray:
        raise NotImplementedError

    def divergence(self, weights: np.ndarray) -> float:
        raise NotImplementedError


class LogitLink(Link):
    """Entropy weights, ``w = exp(eta)``.

    Normalized weights use the log-sum-exp form of the dual, whose gradient is
    the softmax. Both are invariant to shifting ``eta``, which keeps large
    predictors from overflowing.
    """

    name = "logit"

    @property
    def profiles_intercept(self) -> bool:
        return self.normalized

    def divergence_bound(self, n):
        # negative entropy is at most 0 on the simplex
        return 0.0 if self.normalized else None

    def psi(self, eta: np.ndarray) -> float:
        if self.normalized:
            return float(logsumexp(eta))
        return float(np.sum(np.exp(np.minimum(eta, _MAX_EXPONENT))))

    def weights(self, eta: np.ndarray, base: Optional[float] = None) -> np.ndarray:
        if self.normalized:
            return softmax(eta)
        return np.exp(np.minimum(eta, _MAX_EXPONENT))

    def divergence(self, weights: np.ndarray) -> float:
        if self.normalized:
            return float(np.sum(xlogy(weights, weights)))
        return float(np.sum(xlogy(weights, weights) - weights))


class LinearLink(Link):
    """Quadratic divergence from uniform weights, ``w = max(0, 1/n + eta)``.

    ``n`` is the number of units the dual was fitted on; pass ``base`` to
    keep that offset when weighting a different set of rows.
    """

    name = "linear"

    def base_weight(self, n):
        return 1.0 / n

    def divergence_bound(self, n):
        # attained at a vertex of the simplex
        return 0.5 * (1.0 - 1.0 / n) if self.normalized else None

    def psi(self, eta: np.ndarray, base: Optional[float] = None) -> float:
        return 0.5 * float(np.sum(self.weights(eta, base) ** 2))

    def weights(self, eta: np.ndarray, base: Optional[float] = None) -> np.ndarray:
        if base is None:
            base = self.base_weight(eta.shape[0])
        return np.maximum(base + eta, 0.0)

    def divergence(self, weights: np.ndarray) -> float:
        return 0.5 * float(np.sum((weights - self.base_weight(weights.shape[0])) ** 2))


class PosLinearLink(Link):
    """Quadratic divergence from zero, ``w = max(0, eta)``."""

    name = "pos-linear"

    def divergence_bound(self, n):
        return 0.5 if self.normalized else None

    def psi(self, eta: np.ndarray) -> float:
        return 0.5 * float(np.sum(np.maximum(eta, 0.0) ** 2))

    def weights(self, eta: np.ndarray, base: Optional[float] = None) -> np.ndarray:
        return np.maximum(eta, 0.0)

    def divergence(self, weights: np.ndarray) -> float:
        return 0.5 * float(np.sum(weights ** 2))


LINKS: Dict[str, Type[Link]] = {
    "logit": LogitLink,
    "linear": LinearLink,
    "pos-linear": PosLinearLink,
}


# =======================
# Regularizers
# =======================

def project_l1_ball(v: np.ndarray, radius: float) -> np.ndarray:
    """Euclidean projection of ``v`` onto ``{x : ||x||_1 <= radius}`` (Duchi et al., 2008)."""
    if radius <= 0:
        return np.zeros_like(v)
    if np.abs(v).sum() <= radius:
        return v.copy()
    u = np.sort(np.abs(v))[::-1]
    css = np.cumsum(u)
    k = np.arange(1, u.shape[0] + 1)
    rho = np.nonzero(u * k > (css - radius))[0][-1]
    tau = (css[rho] - radius) / (rho + 1.0)
    return np.sign(v) * np.maximum(np.abs(v) - tau, 0.0)


class Regularizer:
    """
    Penalty ``h(theta) = sum_g eps_g * ||theta_g||`` on the dual vector.

    The norm of each group is the dual of the norm its imbalance is measured
    in, so a finite penalty weight ``eps_g`` bounds that group's imbalance by
    ``eps_g``.

    Parameters
    ----------
    groups : Sequence[np.ndarray]
        Column indices of each balance group; must partition the columns.
    eps : np.ndarray
        One nonnegative tolerance per group.
    """

    name: str = ""
    # False when the penalty trades imbalance off softly instead of bounding it
    hard_constraint: bool = True

    def __init__(self, groups: Sequence[np.ndarray], eps: np.ndarray) -> None:
        self.groups = [np.asarray(g, dtype=int) for g in groups]
        self.eps = np.asarray(eps, dtype=float)

    def value(self, theta: np.ndarray) -> float:
        return float(sum(e * self._group_norm(theta[g]) for g, e in zip(self.groups, self.eps)))

    def prox(self, v: np.ndarray, step: float) -> np.ndarray:
        out = v.copy()
        for g, e in zip(self.groups, self.eps):
            out[g] = self._group_prox(v[g], step * e)
        return out

    @property
    def bounds(self) -> np.ndarray:
        """Largest imbalance each group may have in a feasible fit."""
        return self.eps

    def imbalance(self, residual: np.ndarray) -> np.ndarray:
        """Per-group imbalance, measured in the dual of the penalty norm."""
        return np.array([self._dual_norm(residual[g]) for g in self.groups])

    def _group_norm(self, theta_g: np.ndarray) -> float:
        raise NotImplementedError

    def _group_prox(self, v_g: np.ndarray, threshold: float) -> np.ndarray:
        raise NotImplementedError

    def _dual_norm(self, r_g: np.ndarray) -> float:
        raise NotImplementedError


class L1Regularizer(Regularizer):
    """Lasso penalty; bounds the sup-norm imbalance."""

    name = "l1"

    def _group_norm(self, theta_g):
        return np.abs(theta_g).sum()

    def _group_prox(self, v_g, threshold):
        return np.sign(v_g) * np.maximum(np.abs(v_g) - threshold, 0.0)

    def _dual_norm(self, r_g):
        return float(np.max(np.abs(r_g)))


class L2Regularizer(Regularizer):
    """Group-lasso penalty; bounds the Euclidean imbalance of each group."""

    name = "l2"

    def _group_norm(self, theta_g):
        return np.linalg.norm(theta_g)

    def _group_prox(self, v_g, threshold):
        norm = np.linalg.norm(v_g)
        if norm <= threshold:
            return np.zeros_like(v_g)
        return (1.0 - threshold / norm) * v_g

    def _dual_norm(self, r_g):
        return float(np.linalg.norm(r_g))


class LinfRegularizer(Regularizer):
    """Sup-norm penalty; bounds the l1 imbalance of each group."""

    name = "linf"

    def _group_norm(self, theta_g):
        return np.max(np.abs(theta_g))

    def _group_prox(self, v_g, threshold):
        # Moreau decomposition: prox of the sup-norm is v minus its l1-ball projection
        return v_g - project_l1_ball(v_g, threshold)

    def _dual_norm(self, r_g):
        return float(np.abs(r_g).sum())


class RidgeRegularizer(Regularizer):
    """Squared l2 penalty ``eps_g / 2 * ||theta_g||^2``; imbalance is penalized, not bounded."""

    name = "ridge"
    hard_constraint = False

    def value(self, theta):
        return float(sum(0.5 * e * np.sum(theta[g] ** 2) for g, e in zip(self.groups, self.eps)))

    def _group_prox(self, v_g, threshold):
        return v_g / (1.0 + threshold)

    def _dual_norm(self, r_g):
        return float(np.linalg.norm(r_g))


class NoRegularizer(Regularizer):
    """No penalty: weights must balance every column exactly."""

    name = "none"

    @property
    def bounds(self):
        return np.zeros_like(self.eps)

    def value(self, theta):
        return 0.0

    def prox(self, v, step):
        return v.copy()

    def _dual_norm(self, r_g):
        return float(np.max(np.abs(r_g)))


REGULARIZERS: Dict[str, Type[Regularizer]] = {
    "l1": L1Regularizer,
    "l2": L2Regularizer,
    "linf": LinfRegularizer,
    "ridge": RidgeRegularizer,
    "none": NoRegularizer,
}


def resolve_link(link: str) -> Type[Link]:
    try:
        return LINKS[link]
    except KeyError:
        raise BalsynthConfigError(
            f"Unknown link '{link}'; expected one of {sorted(LINKS)}."
        ) from None


def resolve_regularizer(regularizer: Optional[str]) -> Type[Regularizer]:
    key = "none" if regularizer is None else regularizer
    try:
        return REGULARIZERS[key]
    except KeyError:
        raise BalsynthConfigError(
            f"Unknown regularizer '{regularizer}'; expected one of {sorted(REGULARIZERS)}."
        ) from None
