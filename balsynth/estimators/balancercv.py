import logging
from typing import Any, Dict, Union

from ..config_models import BalancerCVConfig, BaseEstimatorResults
from ..utils.crossval import BalancerCV
from ..utils.datautils import KEY_TRT, KEY_X, format_ipw
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt, column_groups
from ..utils.resultutils import build_results

logger = logging.getLogger(__name__)


class BALANCERCV:
    """
    Balancing weights with a cross-validated hyperparameter.

    Cross-validation runs on the pooled unit-by-period design (every flagged
    unit treated) with one of:

    - ``method="loo"``: each control in turn is pseudo-treated and scored on
      the held-out last pre-period.
    - ``method="kfold"``: controls are split into folds; held-out folds are
      reweighted from the fitted dual.
    - ``method="bootstrap"``: control rows are resampled and reweighted from
      the fitted dual.

    The hyperparameter with the smallest mean squared error (earliest on
    ties) is then used for the final single-treated-unit fit.

    Attributes
    ----------
    config : BalancerCVConfig
    hyperparams : list of float
    method : str
    """

    def __init__(self, config: Union[BalancerCVConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = BalancerCVConfig(**config)
        self.config = config
        self.hyperparams = config.hyperparams
        self.method = config.method

    def fit(self) -> BaseEstimatorResults:
        with estimation_errors("BALANCERCV"):
            cfg = self.config
            pooled = format_ipw(cfg.df, cfg.metadata, cfg.outcome_col, cfg.cols, trt_unit=cfg.trt_unit)
            selector = BalancerCV(
                hyperparams=self.hyperparams,
                method=self.method,
                link=cfg.link,
                regularizer=cfg.regularizer,
                normalized=cfg.normalized,
                n_folds=cfg.n_folds,
                n_boot=cfg.n_boot,
                seed=cfg.seed,
                n_jobs=cfg.n_jobs,
                opts=cfg.opts,
            ).fit(pooled[KEY_X], pooled[KEY_TRT])
            best = selector.best_hyperparam_

            prepared, X, trt = prepare_design(cfg)
            opt = BalanceOpt(cfg.link, cfg.regularizer, cfg.normalized, cfg.opts)
            fit = opt.fit(X, trt, best)
            warn_if_infeasible("BALANCERCV", fit)

            return build_results(
                fit,
                prepared,
                cfg.metadata.t_int,
                cfg.cols,
                method_name="BALANCERCV",
                parameters_used={
                    "hyperparams": self.hyperparams,
                    "method": self.method,
                    "best_hyperparam": best,
                    "link": cfg.link,
                    "regularizer": cfg.regularizer,
                    "normalized": cfg.normalized,
                },
                outcome_col=cfg.outcome_col,
                fit_groups=column_groups(None, best, X.shape[1], cfg.regularizer),
                cv=selector.cv_result_,
            )
