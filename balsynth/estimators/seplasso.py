import logging
from typing import Any, Dict, Union

import numpy as np

from ..config_models import SepLassoConfig, BaseEstimatorResults
from ..exceptions import SearchExhaustedError
from ..utils.datautils import KEY_Z0
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt, column_groups
from ..utils.resultutils import build_results
from ..utils.searchutils import SEARCH_FAILED, grid_search

logger = logging.getLogger(__name__)


class SEPLASSO:
    """
    Entropy-balancing synthetic control with separate per-period tolerances.

    Every pre-period is balanced to within ``ep`` control standard deviations
    of that period (or ``ep`` itself when ``scale=False``). The smallest
    feasible ``ep`` on ``0, by, ..., maxep`` is found by binary search and
    the final weights are fitted with those per-period tolerances.

    Attributes
    ----------
    config : SepLassoConfig
    by, maxep : float
        Search grid in units of standard deviation.
    scale : bool
    """

    def __init__(self, config: Union[SepLassoConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = SepLassoConfig(**config)
        self.config = config
        self.by = config.by
        self.scale = config.scale
        self.maxep = config.maxep

    def fit(self) -> BaseEstimatorResults:
        """
        Search the per-period tolerance, refit and impute.

        Raises
        ------
        SearchExhaustedError
            If no tolerance up to ``maxep`` standard deviations is feasible.
        """
        with estimation_errors("SEPLASSO"):
            prepared, X, trt = prepare_design(self.config)
            Z0 = prepared[KEY_Z0]
            if self.scale and Z0.shape[1] > 1:
                sds = Z0.std(axis=1, ddof=1)
            else:
                sds = np.ones(Z0.shape[0])

            opt = BalanceOpt("logit", "l1", True, self.config.opts)

            def feasfunc(ep: float) -> bool:
                return opt.fit(X, trt, ep * sds).feasible

            search = grid_search(0.0, self.maxep, self.by, feasfunc)
            if search.param == SEARCH_FAILED:
                raise SearchExhaustedError(
                    f"Failed to find a synthetic control with balance better than {self.maxep} std deviations."
                )
            minep = search.param
            logger.info("SEPLASSO selected %.4g standard deviations.", minep)

            eps = minep * sds
            fit = opt.fit(X, trt, eps)
            warn_if_infeasible("SEPLASSO", fit)

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="SEPLASSO",
                parameters_used={"by": self.by, "scale": self.scale, "maxep": self.maxep},
                outcome_col=self.config.outcome_col,
                fit_groups=column_groups(None, eps, X.shape[1], "l1"),
                search=search,
                additional_outputs={"minep": minep, "eps": eps},
            )
