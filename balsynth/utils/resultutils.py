import logging
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd

from balsynth.config_models import (
    BaseEstimatorResults,
    EffectsResults,
    FitDiagnosticsResults,
    FitResult,
    LexicalSearchResult,
    MethodDetailsResults,
    PanelColumns,
    SearchResult,
    CVResult,
    TimeSeriesResults,
    WeightsResults,
)
from balsynth.utils.datautils import (
    KEY_CONTROL_UNITS,
    KEY_GROUPS,
    KEY_LEVELS,
    KEY_OUTCOMES,
    KEY_PRE_TIMES,
    KEY_ROW_INDEX,
    KEY_TRT_UNIT,
    KEY_Y0PLOT,
    KEY_Y1PLOT,
    KEY_Z0,
    KEY_Z1,
    group_name,
)

logger = logging.getLogger(__name__)


class effects:
    @staticmethod
    def calculate(
        observed_outcome_series: np.ndarray,
        counterfactual_outcome_series: np.ndarray,
        num_pre_treatment_periods: int,
        num_actual_post_periods: int,
    ) -> tuple:
        """Treatment effects and fit statistics for one observed/counterfactual pair.

        Parameters
        ----------
        observed_outcome_series : np.ndarray
            Observed outcomes of the treated unit, pre-periods first.
        counterfactual_outcome_series : np.ndarray
            Synthetic control path aligned with the observed series.
        num_pre_treatment_periods : int
        num_actual_post_periods : int

        Returns
        -------
        tuple
            (effects dict, fit statistics dict, time series dict).
        """
        observed = np.asarray(observed_outcome_series, dtype=float)
        counterfactual = np.asarray(counterfactual_outcome_series, dtype=float)
        n_pre, n_post = num_pre_treatment_periods, num_actual_post_periods

        pre_residuals = observed[:n_pre] - counterfactual[:n_pre]
        pre_var = np.mean((observed[:n_pre] - np.mean(observed[:n_pre])) ** 2) if n_pre > 0 else np.nan
        r_squared_pre = 1 - np.mean(pre_residuals ** 2) / pre_var if n_pre > 0 and pre_var != 0 else np.nan

        if n_post > 0:
            post = slice(n_pre, n_pre + n_post)
            att_time = observed[post] - counterfactual[post]
            att = float(np.mean(att_time))
            mean_cf_post = np.mean(counterfactual[post])
            att_percent = 100 * att / mean_cf_post if mean_cf_post != 0 else np.nan
            tte = float(np.sum(att_time))
            post_rmse = float(np.std(att_time))
        else:
            att = att_percent = tte = post_rmse = np.nan
            att_time = np.array([])

        treatment_effects_dict = {
            "ATT": att,
            "Percent ATT": att_percent,
            "TTE": tte,
            "ATT_Time": att_time,
        }
        fit_statistics_dict = {
            "T0 RMSE": float(np.sqrt(np.mean(pre_residuals ** 2))) if n_pre > 0 else np.nan,
            "T1 RMSE": post_rmse,
            "R-Squared": r_squared_pre,
            "Pre-Periods": n_pre,
            "Post-Periods": n_post,
        }
        time_series_vectors_dict = {
            "Observed Unit": observed,
            "Counterfactual": counterfactual,
            "Gap": observed - counterfactual,
        }
        return treatment_effects_dict, fit_statistics_dict, time_series_vectors_dict


def impute_controls(
    prepared: Dict[str, Any],
    imputed: np.ndarray,
    cols: PanelColumns,
    outcome_col: Optional[str] = None,
) -> pd.DataFrame:
    """
    Append one synthetic-control row per treated (time, outcome) observation.

    Synthetic rows copy the treated unit's rows with the outcome replaced by
    the imputed control path, ``synthetic="Y"`` and ``potential_outcome="Y(0)"``.
    With ``outcome_col`` the table is ordered by outcome level in order of
    first appearance (stable within a level).
    """
    outcomes: pd.DataFrame = prepared[KEY_OUTCOMES]
    lookup = dict(zip(prepared[KEY_ROW_INDEX], imputed))

    synthetic = outcomes[outcomes[cols.unit] == prepared[KEY_TRT_UNIT]].copy()
    if outcome_col is not None:
        names = [group_name(lvl) for lvl in synthetic[outcome_col]]
    else:
        names = [group_name(None)] * len(synthetic)
    synthetic[cols.outcome] = [lookup[(name, t)] for name, t in zip(names, synthetic[cols.time])]
    synthetic["synthetic"] = "Y"
    synthetic["potential_outcome"] = "Y(0)"

    table = pd.concat([outcomes, synthetic], ignore_index=True)
    if outcome_col is not None:
        position = {lvl: i for i, lvl in enumerate(prepared[KEY_LEVELS])}
        table = table.sort_values(outcome_col, key=lambda s: s.map(position), kind="stable").reset_index(drop=True)
    return table


def build_group_fits(
    fit: FitResult,
    prepared: Dict[str, Any],
    fit_groups: Optional[Dict[str, np.ndarray]] = None,
    dual_aligned: bool = True,
) -> Dict[str, FitResult]:
    """
    One ``FitResult`` per outcome level, in outcome-level order.

    Each shares the joint fit's weights and carries the level's own
    imbalance errors (on the level's pre-period rows). A level is feasible
    when the fit converged and every fitting group that touches its rows was
    within tolerance; without ``fit_groups`` the joint feasibility is used.
    ``dual_aligned`` is False when the dual lives on a reduced basis and has
    no per-level block.
    """
    if fit.imputed is None:
        residual = prepared[KEY_Z0] @ fit.weights - prepared[KEY_Z1]
    else:
        # pre-period rows of the imputed path line up with the rows of Z0
        times = prepared[KEY_ROW_INDEX].get_level_values("time").to_numpy()
        pre_rows = np.isin(times, prepared[KEY_PRE_TIMES])
        residual = fit.imputed[pre_rows] - prepared[KEY_Y1PLOT][pre_rows]
    level_fits = {}
    for name, rows in prepared[KEY_GROUPS].items():
        r = residual[rows]
        if fit_groups is None:
            touching = list(fit.group_errors)
            feasible = fit.feasible
        else:
            touching = [g for g, idx in fit_groups.items() if np.intersect1d(idx, rows).size > 0]
            feasible = bool(fit.converged and all(fit.group_feasible.get(g, fit.feasible) for g in touching))
        level_fits[name] = fit.model_copy(update={
            "dual": fit.dual[rows] if dual_aligned and fit.dual.size else np.zeros(0),
            "l1_error": float(np.abs(r).sum()),
            "l2_error": float(np.linalg.norm(r)),
            "linf_error": float(np.max(np.abs(r))),
            "group_errors": {g: fit.group_errors[g] for g in touching if g in fit.group_errors},
            "group_feasible": {g: fit.group_feasible[g] for g in touching if g in fit.group_feasible},
            "feasible": feasible,
            "imputed": None if fit.imputed is None else fit.imputed[_level_rows(prepared, name)],
        })
    return level_fits


def _level_rows(prepared: Dict[str, Any], name: str) -> np.ndarray:
    return np.asarray(prepared[KEY_ROW_INDEX].get_level_values("level") == name)


def build_results(
    fit: FitResult,
    prepared: Dict[str, Any],
    metadata_t_int: Any,
    cols: PanelColumns,
    method_name: str,
    parameters_used: Dict[str, Any],
    outcome_col: Optional[str] = None,
    fit_groups: Optional[Dict[str, np.ndarray]] = None,
    dual_aligned: bool = True,
    search: Optional[Union[SearchResult, LexicalSearchResult]] = None,
    cv: Optional[CVResult] = None,
    additional_outputs: Optional[Dict[str, Any]] = None,
) -> BaseEstimatorResults:
    """Impute the synthetic control and assemble the standard results object.

    Weighting fits impute ``Y0plot @ weights``; outcome-model fits arrive with
    ``imputed`` already set and no donor weights.
    """
    if fit.imputed is None:
        imputed = prepared[KEY_Y0PLOT] @ fit.weights
        fit = fit.model_copy(update={"imputed": imputed})
    else:
        imputed = fit.imputed
    group_fits = build_group_fits(fit, prepared, fit_groups, dual_aligned)

    times = prepared[KEY_ROW_INDEX].get_level_values("time").to_numpy()
    per_level: Dict[str, Dict[str, Any]] = {}
    for lvl in prepared[KEY_LEVELS]:
        name = group_name(lvl)
        rows = _level_rows(prepared, name)
        level_times = times[rows]
        n_pre = int(np.sum(level_times < metadata_t_int))
        eff, fit_stats, series = effects.calculate(
            prepared[KEY_Y1PLOT][rows], imputed[rows], n_pre, int(rows.sum()) - n_pre
        )
        per_level[name] = {"effects": eff, "fit": fit_stats, "series": series, "times": level_times}

    first = per_level[group_name(prepared[KEY_LEVELS][0])]
    extra_effects = {"TTE": first["effects"]["TTE"], "ATT_Time": first["effects"]["ATT_Time"]}
    if len(per_level) > 1:
        extra_effects["by_outcome"] = {k: v["effects"] for k, v in per_level.items()}

    has_weights = fit.weights.shape[0] == len(prepared[KEY_CONTROL_UNITS])
    donor_weights = (
        {str(u): float(w) for u, w in zip(prepared[KEY_CONTROL_UNITS], fit.weights)} if has_weights else None
    )
    outputs = dict(additional_outputs or {})
    if len(per_level) > 1:
        outputs["fit_by_outcome"] = {k: v["fit"] for k, v in per_level.items()}

    if not fit.feasible:
        logger.info("%s: final weights do not meet the requested balance.", method_name)

    return BaseEstimatorResults(
        effects=EffectsResults(
            att=first["effects"]["ATT"],
            att_percent=first["effects"]["Percent ATT"],
            additional_effects=extra_effects,
        ),
        fit_diagnostics=FitDiagnosticsResults(
            rmse_pre=first["fit"]["T0 RMSE"],
            r_squared_pre=first["fit"]["R-Squared"],
            rmse_post=first["fit"]["T1 RMSE"],
            primal_obj=fit.primal_obj,
            scaled_primal_obj=fit.scaled_primal_obj,
            additional_metrics={
                "l1_error": fit.l1_error,
                "l2_error": fit.l2_error,
                "linf_error": fit.linf_error,
                "converged": fit.converged,
                "n_iter": fit.n_iter,
            },
        ),
        time_series=TimeSeriesResults(
            observed_outcome=first["series"]["Observed Unit"],
            counterfactual_outcome=first["series"]["Counterfactual"],
            estimated_gap=first["series"]["Gap"],
            time_periods=first["times"],
        ),
        weights=WeightsResults(
            donor_weights=donor_weights,
            summary_stats={
                "num_nonzero": int(np.sum(fit.weights > 1e-8)),
                "sum": float(np.sum(fit.weights)),
            } if has_weights else None,
        ),
        method_details=MethodDetailsResults(method_name=method_name, parameters_used=parameters_used),
        feasible=fit.feasible,
        fit=fit,
        group_fits=group_fits,
        outcomes=impute_controls(prepared, imputed, cols, outcome_col),
        search=search,
        cv=cv,
        additional_outputs=outputs or None,
    )
