import logging
from typing import Any, Dict, Union

from ..config_models import SVDSCConfig, BaseEstimatorResults
from ..utils.denoiseutils import fit_svd_formatted, svd_basis
from ..utils.helperutils import estimation_errors, prepare_design, warn_if_infeasible
from ..utils.optutils import BalanceOpt
from ..utils.resultutils import build_results

logger = logging.getLogger(__name__)


class SVDSC:
    """
    Synthetic control on a rank-reduced pre-period history.

    - ``method="balance"``: balancing weights fitted on the leading ``r``
      left singular vectors of the unit-by-period design.
    - ``method="synth"``: simplex weights fitted on the leading ``r``
      singular-value-scaled components of the centred trajectories,
      optionally with the unit means kept as an extra component.

    Attributes
    ----------
    config : SVDSCConfig
    method : str
    r : int
    """

    def __init__(self, config: Union[SVDSCConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = SVDSCConfig(**config)
        self.config = config
        self.method = config.method
        self.r = config.r

    def fit(self) -> BaseEstimatorResults:
        with estimation_errors("SVDSC"):
            prepared, X, trt = prepare_design(self.config)

            if self.method == "balance":
                opt = BalanceOpt(self.config.link, self.config.regularizer, self.config.normalized, self.config.opts)
                fit = opt.fit(svd_basis(X, self.r), trt, self.config.hyperparam)
                parameters = {
                    "r": self.r,
                    "hyperparam": self.config.hyperparam,
                    "link": self.config.link,
                    "regularizer": self.config.regularizer,
                    "normalized": self.config.normalized,
                }
            else:
                fit = fit_svd_formatted(prepared, self.r, self.config.unit_mean)
                parameters = {"r": self.r, "unit_mean": self.config.unit_mean}
            warn_if_infeasible("SVDSC", fit)

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name=f"SVDSC ({self.method})",
                parameters_used=parameters,
                outcome_col=self.config.outcome_col,
                dual_aligned=False,
            )
