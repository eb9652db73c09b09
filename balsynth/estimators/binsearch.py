import logging
from typing import Any, Dict, Union

from ..config_models import BinSearchConfig, BaseEstimatorResults
from ..exceptions import SearchExhaustedError
from ..utils.helperutils import estimation_errors, prepare_design
from ..utils.optutils import BalanceOpt, column_groups
from ..utils.resultutils import build_results
from ..utils.searchutils import SEARCH_FAILED, grid_search

logger = logging.getLogger(__name__)


class BINSEARCH:
    """
    Balancer with the smallest feasible hyperparameter.

    Binary-searches the grid ``start, start + by, ..., <= end`` for the
    smallest hyperparameter whose balancing-weight fit is feasible, then
    refits with it. Feasibility must be monotone in the hyperparameter.

    Attributes
    ----------
    config : BinSearchConfig
    start, end, by : float
        Search grid.
    link, regularizer, normalized
        Passed to the balancer.
    """

    def __init__(self, config: Union[BinSearchConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = BinSearchConfig(**config)
        self.config = config
        self.start = config.start
        self.end = config.end
        self.by = config.by
        self.link = config.link
        self.regularizer = config.regularizer
        self.normalized = config.normalized

    def fit(self) -> BaseEstimatorResults:
        """
        Search, refit and impute.

        Raises
        ------
        SearchExhaustedError
            If no hyperparameter on the grid gives a feasible fit.
        """
        with estimation_errors("BINSEARCH"):
            prepared, X, trt = prepare_design(self.config)
            opt = BalanceOpt(self.link, self.regularizer, self.normalized, self.config.opts)

            def feasfunc(param: float) -> bool:
                return opt.fit(X, trt, param).feasible

            search = grid_search(self.start, self.end, self.by, feasfunc)
            if search.param == SEARCH_FAILED:
                raise SearchExhaustedError(
                    f"Failed to find a synthetic control with balance better than {self.end}."
                )
            logger.info("BINSEARCH selected hyperparameter %.6g after %d fits.", search.param, search.n_evaluations)

            fit = opt.fit(X, trt, search.param)
            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="BINSEARCH",
                parameters_used={
                    "start": self.start,
                    "end": self.end,
                    "by": self.by,
                    "link": self.link,
                    "regularizer": self.regularizer,
                    "normalized": self.normalized,
                },
                outcome_col=self.config.outcome_col,
                fit_groups=column_groups(None, search.param, X.shape[1], self.regularizer),
                search=search,
            )
