import logging
import warnings
from typing import Any, Dict, Union

import numpy as np

from ..config_models import MCPConfig, BaseEstimatorResults, FitResult
from ..utils.datautils import KEY_PRE_TIMES, KEY_ROW_INDEX, KEY_Y0PLOT, KEY_Y1PLOT
from ..utils.denoiseutils import als_impute, soft_impute
from ..utils.helperutils import estimation_errors, prepare_design
from ..utils.resultutils import build_results

logger = logging.getLogger(__name__)


class MCP:
    """
    Matrix-completion counterfactual (nuclear-norm outcome model).

    The periods-by-units outcome matrix (treated unit first, outcome levels
    stacked by row) is completed with the treated unit's post-period entries
    masked out, and the fitted treated column is the counterfactual path.

    Attributes
    ----------
    config : MCPConfig
    method : str
        "svd" (soft-thresholded SVD) or "als" (alternating ridge regression).
    lam : float
        Nuclear-norm penalty.
    max_rank : int, optional
    """

    def __init__(self, config: Union[MCPConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = MCPConfig(**config)
        self.config = config
        self.method = config.method
        self.lam = config.lam
        self.max_rank = config.max_rank

    def fit(self) -> BaseEstimatorResults:
        """
        Complete the outcome matrix and impute the synthetic control.

        Returns
        -------
        BaseEstimatorResults
            ``fit.weights`` is empty (no donor weights); ``fit.imputed`` is
            the completed treated path and ``feasible`` reports convergence.
        """
        with estimation_errors("MCP"):
            prepared, _, _ = prepare_design(self.config)
            Y = np.column_stack([prepared[KEY_Y1PLOT], prepared[KEY_Y0PLOT]])
            times = prepared[KEY_ROW_INDEX].get_level_values("time").to_numpy()
            pre_rows = np.isin(times, prepared[KEY_PRE_TIMES])
            mask = np.ones(Y.shape, dtype=bool)
            mask[~pre_rows, 0] = False

            max_rank = self.max_rank if self.max_rank is not None else max(1, min(Y.shape) - 1)
            if self.method == "svd":
                L, converged, n_iter = soft_impute(Y, mask, self.lam, max_rank, self.config.opts)
            else:
                L, converged, n_iter = als_impute(Y, mask, self.lam, max_rank, self.config.opts, self.config.seed)
            if not converged:
                warnings.warn(
                    f"MCP: matrix completion ({self.method}) stopped after {n_iter} iterations without converging.",
                    UserWarning,
                )

            residual = (Y - L)[mask]
            pre_gap = L[pre_rows, 0] - Y[pre_rows, 0]
            primal_obj = float(np.linalg.norm(pre_gap))
            unif_gap = float(np.linalg.norm(Y[pre_rows, 1:].mean(axis=1) - Y[pre_rows, 0]))
            singular_values = np.linalg.svd(L, compute_uv=False)

            fit = FitResult(
                weights=np.zeros(0),
                dual=np.zeros(0),
                primal_obj=primal_obj,
                dual_obj=float(0.5 * np.sum(residual ** 2) + self.lam * np.sum(singular_values)),
                l1_error=float(np.abs(pre_gap).sum()),
                l2_error=primal_obj,
                linf_error=float(np.max(np.abs(pre_gap))),
                scaled_primal_obj=primal_obj / unif_gap if unif_gap > 0 else None,
                feasible=converged,
                converged=converged,
                n_iter=n_iter,
                hyperparam=self.lam,
                imputed=L[:, 0],
            )

            return build_results(
                fit,
                prepared,
                self.config.metadata.t_int,
                self.config.cols,
                method_name="MCP",
                parameters_used={"method": self.method, "lam": self.lam, "max_rank": max_rank},
                outcome_col=self.config.outcome_col,
                dual_aligned=False,
                additional_outputs={
                    "completed_matrix": L,
                    "rank": int(np.sum(singular_values > 1e-8 * max(1.0, singular_values[0]))),
                },
            )
