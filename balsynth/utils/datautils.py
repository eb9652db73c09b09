import numpy as np
import pandas as pd
from typing import Optional, Dict, List, Any, Union
from balsynth.exceptions import BalsynthDataError
from balsynth.config_models import PanelColumns, PanelMetadata

# Constants for dictionary keys used by format_ipw and format_data
KEY_X = "X"
KEY_TRT = "trt"
KEY_UNITS = "units"
KEY_GROUPS = "groups"
KEY_LEVELS = "levels"
KEY_PRE_TIMES = "pre_times"
KEY_TIMES = "times"
KEY_Y = "Y"

KEY_Z0 = "Z0"
KEY_Z1 = "Z1"
KEY_Y0PLOT = "Y0plot"
KEY_Y1PLOT = "Y1plot"
KEY_TRT_UNIT = "trt_unit"
KEY_CONTROL_UNITS = "control_units"
KEY_OUTCOMES = "outcomes"
KEY_ROW_INDEX = "row_index"

SINGLE_OUTCOME_GROUP = "outcome"


def balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Check if the panel is strongly balanced.

    A strongly balanced panel means every unit has an observation for every
    time period, and there are no duplicate unit-time observations.

    Parameters
    ----------
    df : pd.DataFrame
        The input panel data. Must contain columns specified by
        `unit_id_column_name` and `time_period_column_name`.
    unit_id_column_name : str
        The name of the column in `df` that identifies the units.
    time_period_column_name : str
        The name of the column in `df` that identifies the time periods.

    Raises
    ------
    BalsynthDataError
        If duplicate unit-time observations are found.
        If the panel is not strongly balanced (i.e., not all units have
        observations for all time periods).
    """
    if df.duplicated([unit_id_column_name, time_period_column_name]).any():
        raise BalsynthDataError(
            "Duplicate observations found. Ensure each combination of unit and time is unique."
        )

    total_unique_time_periods = df[time_period_column_name].nunique()
    observations_per_unit = df.groupby(unit_id_column_name)[time_period_column_name].nunique()
    if not (observations_per_unit == total_unique_time_periods).all():
        raise BalsynthDataError(
            "The panel is not strongly balanced. Not all units have observations "
            "for all unique time periods in the dataset."
        )


def _coerce_panel_args(
    metadata: Union[PanelMetadata, Dict[str, Any]],
    cols: Optional[Union[PanelColumns, Dict[str, str]]],
) -> tuple:
    if not isinstance(metadata, PanelMetadata):
        metadata = PanelMetadata(**metadata)
    if cols is None:
        cols = PanelColumns()
    elif not isinstance(cols, PanelColumns):
        cols = PanelColumns(**cols)
    return metadata, cols


def outcome_levels(df: pd.DataFrame, outcome_col: Optional[str]) -> List[Any]:
    """Outcome levels in order of first appearance (``[None]`` for a single outcome)."""
    if outcome_col is None:
        return [None]
    return list(pd.unique(df[outcome_col]))


def group_name(level: Any) -> str:
    """Key used for an outcome level in group maps and per-group fits."""
    return SINGLE_OUTCOME_GROUP if level is None else str(level)


def _level_frames(df: pd.DataFrame, outcome_col: Optional[str], cols: PanelColumns) -> Dict[Any, pd.DataFrame]:
    frames = {}
    for level in outcome_levels(df, outcome_col):
        sub = df if level is None else df[df[outcome_col] == level]
        balance(sub, cols.unit, cols.time)
        frames[level] = sub
    return frames


def _treated_units(df: pd.DataFrame, cols: PanelColumns) -> pd.Series:
    # A unit is treated if any of its rows carries the flag.
    flags = df.groupby(cols.unit)[cols.treated].max()
    if not np.all(np.isin(flags.to_numpy(), [0, 1, True, False])):
        raise BalsynthDataError("Treatment indicator must be a binary variable (0 or 1).")
    return flags.astype(bool)


def format_ipw(
    df: pd.DataFrame,
    metadata: Union[PanelMetadata, Dict[str, Any]],
    outcome_col: Optional[str] = None,
    cols: Optional[Union[PanelColumns, Dict[str, str]]] = None,
    trt_unit: Optional[Any] = None,
) -> Dict[str, Any]:
    """Reshape a long panel into a unit-by-period design for balancing weights.

    Parameters
    ----------
    df : pd.DataFrame
        Long panel with unit, time, outcome and treated columns.
    metadata : PanelMetadata or dict
        Must carry ``t_int``; periods with ``time < t_int`` form the design.
    outcome_col : str, optional
        Column identifying outcome types. Each outcome level contributes a
        block of pre-period columns and becomes one balance group.
    cols : PanelColumns or dict, optional
        Column names. Defaults to unit/time/outcome/treated.
    trt_unit : optional
        If given, only this unit is flagged as treated.

    Returns
    -------
    Dict[str, Any]
        "X" : np.ndarray
            Design matrix, shape (n_units, n_levels * n_pre_periods).
        "trt" : np.ndarray
            0/1 treatment indicator aligned with the rows of X.
        "units" : np.ndarray
            Unit identifiers in row order.
        "groups" : Dict[str, np.ndarray]
            Outcome level -> column indices of X, in outcome-level order.
        "levels" : List
            Raw outcome levels in the same order.
        "pre_times", "times" : np.ndarray
            Pre-treatment and all time periods.
        "Y" : Dict[str, np.ndarray]
            Outcome level -> full (n_units, n_periods) outcome matrix.
    """
    metadata, cols = _coerce_panel_args(metadata, cols)
    frames = _level_frames(df, outcome_col, cols)

    treated_flags = _treated_units(df, cols)
    units = treated_flags.index.to_numpy()
    if trt_unit is not None:
        if trt_unit not in treated_flags.index:
            raise BalsynthDataError(f"Treated unit '{trt_unit}' not found in column '{cols.unit}'.")
        trt = (units == trt_unit).astype(int)
    else:
        trt = treated_flags.to_numpy().astype(int)

    blocks: List[np.ndarray] = []
    groups: Dict[str, np.ndarray] = {}
    full_outcomes: Dict[str, np.ndarray] = {}
    offset = 0
    times = pre_times = None
    for level, sub in frames.items():
        wide = sub.pivot(index=cols.unit, columns=cols.time, values=cols.outcome).reindex(units)
        if wide.isna().any().any():
            raise BalsynthDataError("Outcome matrix has missing unit/time cells after pivoting.")
        times = wide.columns.to_numpy()
        pre_mask = times < metadata.t_int
        pre_times = times[pre_mask]
        block = wide.to_numpy(dtype=float)[:, pre_mask]
        blocks.append(block)
        groups[group_name(level)] = np.arange(offset, offset + block.shape[1])
        full_outcomes[group_name(level)] = wide.to_numpy(dtype=float)
        offset += block.shape[1]

    return {
        KEY_X: np.hstack(blocks),
        KEY_TRT: trt,
        KEY_UNITS: units,
        KEY_GROUPS: groups,
        KEY_LEVELS: list(frames.keys()),
        KEY_PRE_TIMES: pre_times,
        KEY_TIMES: times,
        KEY_Y: full_outcomes,
    }


def format_data(
    df: pd.DataFrame,
    metadata: Union[PanelMetadata, Dict[str, Any]],
    trt_unit: Optional[Any] = None,
    outcome_col: Optional[str] = None,
    cols: Optional[Union[PanelColumns, Dict[str, str]]] = None,
) -> Dict[str, Any]:
    """Reshape a long panel into the period-by-unit layout used by Synth-style fits.

    Rows of the returned matrices are (outcome level, period) pairs in
    outcome-major order; columns are units.

    Returns
    -------
    Dict[str, Any]
        "Z0" : np.ndarray
            Pre-period outcomes of the controls, shape (n_levels * n_pre, n_controls).
        "Z1" : np.ndarray
            Pre-period outcomes of the treated unit, shape (n_levels * n_pre,).
        "Y0plot" : np.ndarray
            All-period outcomes of the controls, shape (n_levels * n_periods, n_controls).
        "Y1plot" : np.ndarray
            All-period outcomes of the treated unit.
        "groups" : Dict[str, np.ndarray]
            Outcome level -> row indices of Z0/Z1.
        "levels" : List
            Raw outcome levels in order of first appearance.
        "row_index" : pd.MultiIndex
            (group name, time) label of each Y0plot row.
        "trt_unit" : Any
            Identifier of the treated unit.
        "control_units" : np.ndarray
            Identifiers of the controls, in column order.
        "pre_times", "times" : np.ndarray
        "outcomes" : pd.DataFrame
            Copy of the input with ``synthetic="N"`` and ``potential_outcome`` added.

    Raises
    ------
    BalsynthDataError
        If the treated unit cannot be identified uniquely, or no controls remain.
    """
    metadata, cols = _coerce_panel_args(metadata, cols)
    frames = _level_frames(df, outcome_col, cols)

    treated_flags = _treated_units(df, cols)
    if trt_unit is None:
        flagged = treated_flags.index[treated_flags.to_numpy()]
        if len(flagged) != 1:
            raise BalsynthDataError(
                f"Expected exactly one treated unit, found {len(flagged)}. Pass 'trt_unit' explicitly."
            )
        trt_unit = flagged[0]
    elif trt_unit not in treated_flags.index:
        raise BalsynthDataError(f"Treated unit '{trt_unit}' not found in column '{cols.unit}'.")

    # Other treated units are not valid donors.
    control_units = treated_flags.index[(~treated_flags.to_numpy()) & (treated_flags.index != trt_unit)].to_numpy()
    if len(control_units) == 0:
        raise BalsynthDataError("No control units found after selecting the treated unit.")

    z_blocks, y_blocks, groups, row_labels = [], [], {}, []
    offset = 0
    times = pre_times = None
    for level, sub in frames.items():
        wide = sub.pivot(index=cols.time, columns=cols.unit, values=cols.outcome)
        times = wide.index.to_numpy()
        pre_mask = times < metadata.t_int
        pre_times = times[pre_mask]
        y_blocks.append(wide)
        z_blocks.append(wide.loc[pre_mask])
        groups[group_name(level)] = np.arange(offset, offset + int(pre_mask.sum()))
        row_labels.extend((group_name(level), t) for t in times)
        offset += int(pre_mask.sum())

    z_all = pd.concat(z_blocks, axis=0)
    y_all = pd.concat(y_blocks, axis=0)

    outcomes = df.copy()
    outcomes["synthetic"] = "N"
    post_treated = (outcomes[cols.unit] == trt_unit) & (outcomes[cols.time] >= metadata.t_int)
    outcomes["potential_outcome"] = np.where(post_treated, "Y(1)", "Y(0)")

    return {
        KEY_Z0: z_all[control_units].to_numpy(dtype=float),
        KEY_Z1: z_all[trt_unit].to_numpy(dtype=float),
        KEY_Y0PLOT: y_all[control_units].to_numpy(dtype=float),
        KEY_Y1PLOT: y_all[trt_unit].to_numpy(dtype=float),
        KEY_GROUPS: groups,
        KEY_LEVELS: list(frames.keys()),
        KEY_ROW_INDEX: pd.MultiIndex.from_tuples(row_labels, names=["level", "time"]),
        KEY_TRT_UNIT: trt_unit,
        KEY_CONTROL_UNITS: control_units,
        KEY_PRE_TIMES: pre_times,
        KEY_TIMES: times,
        KEY_OUTCOMES: outcomes,
    }


def ipw_from_synth(prepared: Dict[str, Any]) -> Dict[str, np.ndarray]:
    """Unit-by-period design (treated row first) built from a format_data dict."""
    X = np.vstack([prepared[KEY_Z1][None, :], prepared[KEY_Z0].T])
    trt = np.zeros(X.shape[0], dtype=int)
    trt[0] = 1
    return {KEY_X: X, KEY_TRT: trt}
