"""
Tolerance calibration: binary search over a monotone feasibility oracle and
lexical (priority-ordered) search over groups of balance constraints.

Every search assumes feasibility is monotone in the tolerance: if a
tolerance is feasible, so is every larger one.
"""

import logging
from typing import Callable, Dict, Any, List, Optional, Sequence, Union

import numpy as np

from balsynth.config_models import SearchResult, LexicalSearchResult
from balsynth.exceptions import BalsynthConfigError

logger = logging.getLogger(__name__)

# Returned when no candidate is feasible
SEARCH_FAILED = -1

# Absorbs float error in (end - start) / by so the end point is kept
_GRID_SLACK = 1e-10


def tolerance_grid(start: float, end: float, by: float) -> np.ndarray:
    """Evenly spaced candidates ``start, start + by, ...`` not exceeding ``end``."""
    if by <= 0:
        raise BalsynthConfigError(f"Grid step 'by' must be positive, got {by}.")
    if start > end:
        raise BalsynthConfigError(f"Grid start ({start}) must not exceed end ({end}).")
    n_points = int(np.floor((end - start) / by + _GRID_SLACK)) + 1
    return start + by * np.arange(n_points)


def _search(eps: np.ndarray, feasfunc: Callable[[float], bool]) -> SearchResult:
    cache: Dict[int, bool] = {}

    def oracle(i: int) -> bool:
        if i not in cache:
            cache[i] = bool(feasfunc(float(eps[i])))
            logger.debug("Feasibility at tolerance %.6g: %s", eps[i], cache[i])
        return cache[i]

    lo, hi = 0, len(eps) - 1
    while hi > lo:
        n = hi - lo + 1
        mid = lo + n // 2 - 1
        if oracle(mid):
            hi = mid
        else:
            lo = mid + 1

    param = float(eps[lo]) if oracle(lo) else SEARCH_FAILED
    return SearchResult(param=param, grid=eps, n_evaluations=len(cache))


def bin_search_(eps: Sequence[float], feasfunc: Callable[[float], bool]) -> float:
    """
    Smallest feasible tolerance in a sorted candidate array.

    The midpoint of ``n`` remaining candidates is the ``floor(n / 2)``-th, so
    even-length ranges are split towards the lower half. A feasible midpoint
    keeps the lower half (midpoint included), otherwise the upper half is kept.

    Parameters
    ----------
    eps : Sequence[float]
        Sorted candidate tolerances.
    feasfunc : Callable[[float], bool]
        Monotone feasibility oracle.

    Returns
    -------
    float
        The smallest feasible candidate, or -1 if the last remaining
        candidate is infeasible.
    """
    eps = np.asarray(eps, dtype=float)
    if eps.size == 0:
        raise BalsynthConfigError("Candidate tolerance list is empty.")
    return _search(eps, feasfunc).param


def bin_search(start: float, end: float, by: float, feasfunc: Callable[[float], bool]) -> float:
    """Binary search over ``tolerance_grid(start, end, by)``; see :func:`bin_search_`."""
    return bin_search_(tolerance_grid(start, end, by), feasfunc)


def grid_search(start: float, end: float, by: float, feasfunc: Callable[[float], bool]) -> SearchResult:
    """Like :func:`bin_search` but returns the grid and the number of oracle calls too."""
    return _search(tolerance_grid(start, end, by), feasfunc)


def lexical_search(
    grp_order: Sequence[Any],
    feasfunc: Callable[[Dict[Any, float]], bool],
    by: float,
    maxep: float,
    lowerep: Union[float, Dict[Any, float]] = 0.0,
    init_eps: Optional[Dict[Any, float]] = None,
) -> LexicalSearchResult:
    """
    Lexical calibration of per-group tolerances.

    Groups are visited in ``grp_order``. Each group's tolerance is
    binary-searched on ``[lowerep, maxep]`` while earlier groups hold the
    minimum already found for them and later groups hold their ``init_eps``
    value (a large "unconstrained" sentinel). The found minimum is then fixed
    and never revisited.

    Parameters
    ----------
    grp_order : Sequence
        Groups from highest to lowest priority.
    feasfunc : Callable[[Dict], bool]
        Oracle taking the full tolerance map.
    by, maxep : float
        Grid step and largest tolerance.
    lowerep : float or dict
        Smallest tolerance, globally or per group.
    init_eps : dict, optional
        Starting tolerance per group. Defaults to infinity.

    Returns
    -------
    LexicalSearchResult
        The search stops at the first group with no feasible tolerance; that
        group and every later one are listed in ``unresolved`` and keep their
        starting tolerance.
    """
    if len(grp_order) == 0:
        raise BalsynthConfigError("Lexical search needs at least one group.")
    eps_map: Dict[Any, float] = {g: np.inf for g in grp_order}
    if init_eps is not None:
        eps_map.update(init_eps)

    resolved: List[Any] = []
    unresolved: List[Any] = []
    for pos, g in enumerate(grp_order):
        lower = lowerep.get(g, 0.0) if isinstance(lowerep, dict) else lowerep

        def group_feasible(ep: float, g=g) -> bool:
            trial = dict(eps_map)
            trial[g] = ep
            return feasfunc(trial)

        minep = bin_search(lower, maxep, by, group_feasible)
        if minep < 0:
            unresolved = list(grp_order[pos:])
            logger.info("Lexical search stopped at group %r: no tolerance up to %.4g is feasible.", g, maxep)
            break
        eps_map[g] = minep
        resolved.append(g)
        logger.info("Lexical search fixed group %r at tolerance %.4g.", g, minep)

    return LexicalSearchResult(eps=eps_map, resolved=resolved, unresolved=unresolved)
