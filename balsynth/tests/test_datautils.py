import numpy as np
import pandas as pd
import pytest

from balsynth.exceptions import BalsynthDataError
from balsynth.utils.datautils import (
    balance,
    format_data,
    format_ipw,
    group_name,
    ipw_from_synth,
    outcome_levels,
    KEY_X, KEY_TRT, KEY_UNITS, KEY_GROUPS, KEY_LEVELS, KEY_PRE_TIMES, KEY_TIMES, KEY_Y,
    KEY_Z0, KEY_Z1, KEY_Y0PLOT, KEY_Y1PLOT, KEY_ROW_INDEX, KEY_TRT_UNIT,
    KEY_CONTROL_UNITS, KEY_OUTCOMES, SINGLE_OUTCOME_GROUP,
)


def test_balance_passes_on_balanced_panel(toy_panel):
    df, _ = toy_panel
    balance(df, "unit", "time")


def test_balance_duplicates(toy_panel):
    df, _ = toy_panel
    with pytest.raises(BalsynthDataError, match="Duplicate"):
        balance(pd.concat([df, df.iloc[[0]]]), "unit", "time")


def test_balance_unbalanced(toy_panel):
    df, _ = toy_panel
    with pytest.raises(BalsynthDataError, match="not strongly balanced"):
        balance(df.iloc[1:], "unit", "time")


def test_outcome_levels_first_appearance():
    df = pd.DataFrame({"k": ["b", "a", "b", "c"]})
    assert outcome_levels(df, "k") == ["b", "a", "c"]
    assert outcome_levels(df, None) == [None]


def test_group_name():
    assert group_name(None) == SINGLE_OUTCOME_GROUP
    assert group_name(2) == "2"


def test_format_data_single_outcome(toy_panel):
    df, metadata = toy_panel
    prepared = format_data(df, metadata)

    assert prepared[KEY_TRT_UNIT] == "a"
    assert list(prepared[KEY_CONTROL_UNITS]) == ["b", "c"]
    np.testing.assert_array_equal(prepared[KEY_PRE_TIMES], [0, 1, 2])
    np.testing.assert_array_equal(prepared[KEY_TIMES], [0, 1, 2, 3])
    np.testing.assert_allclose(prepared[KEY_Z1], [1.0, 2.0, 3.0])
    np.testing.assert_allclose(prepared[KEY_Z0], [[0.0, 2.0], [1.0, 3.0], [2.0, 4.0]])
    np.testing.assert_allclose(prepared[KEY_Y1PLOT], [1.0, 2.0, 3.0, 10.0])
    assert prepared[KEY_Y0PLOT].shape == (4, 2)
    assert list(prepared[KEY_GROUPS]) == [SINGLE_OUTCOME_GROUP]
    np.testing.assert_array_equal(prepared[KEY_GROUPS][SINGLE_OUTCOME_GROUP], [0, 1, 2])
    assert list(prepared[KEY_ROW_INDEX]) == [(SINGLE_OUTCOME_GROUP, t) for t in range(4)]


def test_format_data_potential_outcome_labels(toy_panel):
    df, metadata = toy_panel
    outcomes = format_data(df, metadata)[KEY_OUTCOMES]
    assert (outcomes["synthetic"] == "N").all()
    post_treated = (outcomes["unit"] == "a") & (outcomes["time"] >= 3)
    assert (outcomes.loc[post_treated, "potential_outcome"] == "Y(1)").all()
    assert (outcomes.loc[~post_treated, "potential_outcome"] == "Y(0)").all()
    assert "synthetic" not in df.columns


def test_format_data_explicit_treated_unit(toy_panel):
    df, metadata = toy_panel
    prepared = format_data(df, metadata, trt_unit="b")
    # 'a' is flagged treated, so it is not a donor either
    assert prepared[KEY_TRT_UNIT] == "b"
    assert list(prepared[KEY_CONTROL_UNITS]) == ["c"]


def test_format_data_unknown_treated_unit(toy_panel):
    df, metadata = toy_panel
    with pytest.raises(BalsynthDataError, match="not found"):
        format_data(df, metadata, trt_unit="zz")


def test_format_data_needs_unique_treated_unit(toy_panel):
    df, metadata = toy_panel
    df.loc[(df["unit"] == "b") & (df["time"] == 3), "treated"] = 1
    with pytest.raises(BalsynthDataError, match="exactly one treated unit"):
        format_data(df, metadata)


def test_format_data_non_binary_treatment(toy_panel):
    df, metadata = toy_panel
    df.loc[0, "treated"] = 2
    with pytest.raises(BalsynthDataError, match="binary"):
        format_data(df, metadata)


def test_format_data_multi_outcome_order(multi_outcome_panel):
    df, metadata = multi_outcome_panel
    # Put outcome 2 first so first appearance differs from sorted order
    df = pd.concat([df[df["outcome_id"] == 2], df[df["outcome_id"] == 1]], ignore_index=True)
    prepared = format_data(df, metadata, outcome_col="outcome_id")

    assert prepared[KEY_LEVELS] == [2, 1]
    assert list(prepared[KEY_GROUPS]) == ["2", "1"]
    n_pre = len(prepared[KEY_PRE_TIMES])
    np.testing.assert_array_equal(prepared[KEY_GROUPS]["2"], np.arange(n_pre))
    np.testing.assert_array_equal(prepared[KEY_GROUPS]["1"], np.arange(n_pre, 2 * n_pre))
    assert prepared[KEY_Z0].shape == (2 * n_pre, 20)
    assert prepared[KEY_ROW_INDEX][0][0] == "2"

    first = df[(df["outcome_id"] == 2) & (df["unit"] == 0)].sort_values("time")
    np.testing.assert_allclose(prepared[KEY_Y1PLOT][: len(first)], first["outcome"].to_numpy())


def test_format_ipw_layout(multi_outcome_panel):
    df, metadata = multi_outcome_panel
    design = format_ipw(df, metadata, outcome_col="outcome_id")
    n_pre = metadata["t_int"]

    assert design[KEY_X].shape == (21, 2 * n_pre)
    np.testing.assert_array_equal(design[KEY_TRT], np.r_[1, np.zeros(20, dtype=int)])
    np.testing.assert_array_equal(design[KEY_UNITS], np.arange(21))
    np.testing.assert_array_equal(design[KEY_GROUPS]["2"], np.arange(n_pre, 2 * n_pre))
    assert design[KEY_Y]["1"].shape == (21, n_pre + 4)


def test_format_ipw_explicit_treated_unit(toy_panel):
    df, metadata = toy_panel
    design = format_ipw(df, metadata, trt_unit="c")
    np.testing.assert_array_equal(design[KEY_TRT], [0, 0, 1])


def test_ipw_from_synth_matches_format_ipw(small_panel):
    df, metadata = small_panel
    prepared = format_data(df, metadata)
    from_synth = ipw_from_synth(prepared)
    direct = format_ipw(df, metadata)
    np.testing.assert_allclose(from_synth[KEY_X], direct[KEY_X])
    np.testing.assert_array_equal(from_synth[KEY_TRT], direct[KEY_TRT])


def test_custom_column_names(toy_panel):
    df, metadata = toy_panel
    df = df.rename(columns={"unit": "id", "time": "period", "outcome": "y", "treated": "d"})
    cols = {"unit": "id", "time": "period", "outcome": "y", "treated": "d"}
    prepared = format_data(df, metadata, cols=cols)
    assert prepared[KEY_TRT_UNIT] == "a"
