import logging
import warnings
from typing import Any, Dict, List, Tuple, Union

import numpy as np

from ..config_models import LexicalConfig, BaseEstimatorResults
from ..exceptions import BalsynthConfigError, SearchExhaustedError
from ..utils.datautils import KEY_GROUPS, KEY_PRE_TIMES, group_name
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt, group_magnitudes, unconstrained_eps
from ..utils.resultutils import build_results
from ..utils.searchutils import lexical_search

logger = logging.getLogger(__name__)

RECENT = "Recent"
OLD = "Old"


class LEXICAL:
    """
    Entropy-balancing synthetic control with lexically calibrated tolerances.

    Balance groups are calibrated one at a time in priority order: each
    group gets the smallest feasible l2 tolerance given the tolerances
    already fixed for higher-priority groups, with lower-priority groups
    left unconstrained. Three groupings are available:

    - ``mode="groups"``: the outcome levels of ``outcome_col``, in ``grp_order``.
    - ``mode="time"``: each pre-period separately, most recent first.
    - ``mode="recent"``: pre-periods at or after ``t_past`` ("Recent")
      before the earlier ones ("Old").

    If calibration stops early, the unresolved groups stay unconstrained,
    are listed in ``results.search.unresolved`` and a ``UserWarning`` is
    emitted.

    Attributes
    ----------
    config : LexicalConfig
    mode : str
    by, maxep : float
        Grid step and largest tolerance of each group's search.
    lowerep : float or dict
        Smallest tolerance, globally or per group.
    """

    def __init__(self, config: Union[LexicalConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = LexicalConfig(**config)
        self.config = config
        self.mode = config.mode
        self.by = config.by
        self.maxep = config.maxep
        self.lowerep = config.lowerep

    def _balance_groups(self, prepared: Dict[str, Any]) -> Tuple[Dict[str, np.ndarray], List[str]]:
        """Return (group name -> design columns, priority order)."""
        if self.mode == "groups":
            groups = prepared[KEY_GROUPS]
            order = [group_name(g) for g in self.config.grp_order]
            unknown = [g for g in order if g not in groups]
            if unknown:
                raise BalsynthConfigError(f"grp_order names unknown outcome levels: {unknown}.")
            return groups, order

        pre_times = prepared[KEY_PRE_TIMES]
        if self.mode == "time":
            groups = {str(t): np.array([i]) for i, t in enumerate(pre_times)}
            return groups, [str(t) for t in pre_times[::-1]]

        recent = np.asarray(pre_times >= self.config.t_past)
        groups = {RECENT: np.flatnonzero(recent), OLD: np.flatnonzero(~recent)}
        groups = {name: idx for name, idx in groups.items() if idx.size > 0}
        return groups, [name for name in (RECENT, OLD) if name in groups]

    def fit(self) -> BaseEstimatorResults:
        """
        Calibrate tolerances, refit and impute.

        Raises
        ------
        SearchExhaustedError
            If not even the highest-priority group has a feasible tolerance
            up to ``maxep``.
        """
        with estimation_errors("LEXICAL"):
            prepared, X, trt = prepare_design(self.config)
            groups, order = self._balance_groups(prepared)

            opt = BalanceOpt("logit", "l2", True, self.config.opts)
            mags = group_magnitudes(X[trt == 0], groups)

            def feasfunc(eps_map: Dict[str, float]) -> bool:
                return opt.fit(X, trt, eps_map, groups=groups).feasible

            lowerep = self.lowerep
            if isinstance(lowerep, dict):
                lowerep = {group_name(k): v for k, v in lowerep.items()}
            search = lexical_search(order, feasfunc, self.by, self.maxep, lowerep, unconstrained_eps(mags))

            if not search.resolved:
                raise SearchExhaustedError(
                    f"Failed to find a synthetic control with balance better than {self.maxep} "
                    f"in group '{order[0]}'."
                )
            if not search.complete:
                warnings.warn(
                    f"LEXICAL: calibration stopped early; groups {search.unresolved} are left unconstrained.",
                    UserWarning,
                )

            fit = opt.fit(X, trt, search.eps, groups=groups)
            warn_if_infeasible("LEXICAL", fit)

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="LEXICAL",
                parameters_used={
                    "mode": self.mode,
                    "grp_order": order,
                    "by": self.by,
                    "maxep": self.maxep,
                    "lowerep": self.lowerep,
                },
                outcome_col=self.config.outcome_col,
                fit_groups=groups,
                search=search,
            )
