import logging
from typing import Any, Dict, Union

import numpy as np

from ..config_models import MaxEntConfig, BaseEstimatorResults
from ..exceptions import BalsynthConfigError
from ..utils.datautils import KEY_GROUPS
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt, column_groups
from ..utils.resultutils import build_results

logger = logging.getLogger(__name__)


class MAXENT:
    """
    Maximum-entropy synthetic control.

    Entropy-balancing weights (logit link, normalized) with one of two
    balance criteria:

    - ``lasso=False``: the l2 imbalance of each outcome level's pre-period
      block is bounded by that level's tolerance.
    - ``lasso=True``: the imbalance of every pre-period row is bounded
      separately (sup-norm), with a shared or per-row tolerance.

    Attributes
    ----------
    config : MaxEntConfig
    eps : float, list or dict
        Tolerance(s). With ``lasso=False`` a list gives one tolerance per
        outcome level (in order of first appearance) and a dict maps outcome
        levels to tolerances.
    lasso : bool
    """

    def __init__(self, config: Union[MaxEntConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = MaxEntConfig(**config)
        self.config = config
        self.eps = config.eps
        self.lasso = config.lasso

    def _tolerances(self, prepared: Dict[str, Any], n_cols: int):
        """Return (groups, hyperparam) for the balance criterion."""
        level_groups = prepared[KEY_GROUPS]
        if self.lasso:
            if isinstance(self.eps, dict):
                raise BalsynthConfigError("lasso=True takes a scalar or one tolerance per pre-period row.")
            return None, self.eps

        if isinstance(self.eps, dict):
            missing = [name for name in level_groups if name not in self.eps]
            if missing:
                raise BalsynthConfigError(f"No tolerance given for outcome levels: {missing}.")
            return level_groups, {name: self.eps[name] for name in level_groups}
        if np.ndim(self.eps) == 1 and len(self.eps) != len(level_groups):
            raise BalsynthConfigError(
                f"'eps' has {len(self.eps)} entries but there are {len(level_groups)} outcome levels."
            )
        return level_groups, self.eps

    def fit(self) -> BaseEstimatorResults:
        """
        Fit entropy-balancing weights and impute the synthetic control.

        Returns
        -------
        BaseEstimatorResults
            ``group_fits`` carries one fit per outcome level, each feasible
            only if its own balance constraints hold.
        """
        with estimation_errors("MAXENT"):
            prepared, X, trt = prepare_design(self.config)
            groups, hyperparam = self._tolerances(prepared, X.shape[1])
            regularizer = "l1" if self.lasso else "l2"

            opt = BalanceOpt("logit", regularizer, True, self.config.opts)
            fit = opt.fit(X, trt, hyperparam, groups=groups)
            warn_if_infeasible("MAXENT", fit)

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="MAXENT",
                parameters_used={"eps": self.eps, "lasso": self.lasso},
                outcome_col=self.config.outcome_col,
                fit_groups=column_groups(groups, hyperparam, X.shape[1], regularizer),
            )
