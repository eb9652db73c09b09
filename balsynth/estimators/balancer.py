import logging
from typing import Any, Dict, Union

import numpy as np

from ..config_models import BalancerConfig, BaseEstimatorResults
from ..utils.datautils import KEY_GROUPS
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt, column_groups
from ..utils.resultutils import build_results

logger = logging.getLogger(__name__)


class BALANCER:
    """
    Balancing-weights synthetic control.

    Finds nonnegative control weights of minimal divergence (entropy for the
    logit link, squared distance for the linear links) whose weighted
    pre-period outcomes match the treated unit's within the requested
    tolerance, then imputes the treated unit's untreated path as the
    weighted average of the controls.

    Attributes
    ----------
    config : BalancerConfig
        The configuration object holding all parameters for the estimator.
    hyperparam : float or list of float
        Imbalance tolerance. A list with one entry per outcome level balances
        each outcome's pre-period block separately; a list with one entry per
        pre-period column gives per-column tolerances.
    link : str
        "logit", "linear" or "pos-linear".
    regularizer : str
        "l1", "l2", "linf", "ridge" or "none".
    normalized : bool
        Whether the weights sum to one.
    """

    def __init__(self, config: Union[BalancerConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = BalancerConfig(**config)
        self.config = config
        self.hyperparam = config.hyperparam
        self.link = config.link
        self.regularizer = config.regularizer
        self.normalized = config.normalized

    def _groups_for(self, prepared: Dict[str, Any]):
        level_groups = prepared[KEY_GROUPS]
        if np.ndim(self.hyperparam) == 1 and len(level_groups) > 1 and len(self.hyperparam) == len(level_groups):
            return level_groups
        return None

    def fit(self) -> BaseEstimatorResults:
        """
        Fit balancing weights and impute the synthetic control.

        Returns
        -------
        BaseEstimatorResults
            ``fit`` holds the joint weight fit (with ``imputed`` set),
            ``group_fits`` one fit per outcome level and ``outcomes`` the
            input rows plus the synthetic-control rows. Infeasible fits are
            returned with ``feasible=False`` and a ``UserWarning``.
        """
        with estimation_errors("BALANCER"):
            prepared, X, trt = prepare_design(self.config)
            groups = self._groups_for(prepared)

            opt = BalanceOpt(self.link, self.regularizer, self.normalized, self.config.opts)
            fit = opt.fit(X, trt, self.hyperparam, groups=groups)
            warn_if_infeasible("BALANCER", fit)

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="BALANCER",
                parameters_used={
                    "hyperparam": self.hyperparam,
                    "link": self.link,
                    "regularizer": self.regularizer,
                    "normalized": self.normalized,
                },
                outcome_col=self.config.outcome_col,
                fit_groups=column_groups(groups, self.hyperparam, X.shape[1], self.regularizer),
            )
