import numpy as np
import pytest

from balsynth.exceptions import BalsynthConfigError
from balsynth.utils.searchutils import (
    SEARCH_FAILED,
    bin_search,
    bin_search_,
    grid_search,
    lexical_search,
    tolerance_grid,
)


def test_tolerance_grid_keeps_end_point():
    np.testing.assert_allclose(tolerance_grid(0.0, 0.3, 0.1), [0.0, 0.1, 0.2, 0.3])
    assert len(tolerance_grid(0.0, 1.0, 0.1)) == 11
    np.testing.assert_allclose(tolerance_grid(0.0, 0.25, 0.1), [0.0, 0.1, 0.2])
    np.testing.assert_allclose(tolerance_grid(2.0, 2.0, 1.0), [2.0])


@pytest.mark.parametrize("start, end, by", [(0.0, 1.0, 0.0), (0.0, 1.0, -0.1), (2.0, 1.0, 0.1)])
def test_tolerance_grid_errors(start, end, by):
    with pytest.raises(BalsynthConfigError):
        tolerance_grid(start, end, by)


def test_bin_search_finds_crossover():
    assert bin_search(0.0, 1.0, 0.1, lambda e: e >= 0.35) == pytest.approx(0.4)
    assert bin_search(0.0, 1.0, 0.1, lambda e: True) == 0.0
    assert bin_search(0.0, 1.0, 0.1, lambda e: e >= 1.0) == pytest.approx(1.0)


def test_bin_search_failure_sentinel():
    assert bin_search(0.0, 1.0, 0.1, lambda e: False) == SEARCH_FAILED
    assert bin_search_([0.5], lambda e: False) == -1


def test_bin_search_empty_candidates():
    with pytest.raises(BalsynthConfigError):
        bin_search_([], lambda e: True)


def test_bin_search_midpoint_biased_low():
    calls = []

    def feasfunc(e):
        calls.append(e)
        return True

    bin_search_([0.0, 1.0, 2.0, 3.0], feasfunc)
    # four candidates: the first probe is the second one, not the third
    assert calls[0] == 1.0


def test_grid_search_counts_distinct_evaluations():
    always = grid_search(0.0, 1.0, 0.1, lambda e: True)
    assert always.param == 0.0
    assert always.n_evaluations == 3
    never = grid_search(0.0, 1.0, 0.1, lambda e: False)
    assert never.param == SEARCH_FAILED
    assert never.n_evaluations == 5
    assert len(never.grid) == 11


def test_grid_search_never_repeats_a_candidate():
    seen = []

    def feasfunc(e):
        seen.append(e)
        return e >= 0.53

    result = grid_search(0.0, 1.0, 0.05, feasfunc)
    assert result.param == pytest.approx(0.55)
    assert len(seen) == len(set(seen)) == result.n_evaluations


# ------------------------------
# Lexical search
# ------------------------------

def coupled_oracle(eps):
    # group B needs more slack the tighter A is held
    return eps["A"] >= 0.3 and eps["B"] >= 1.0 - eps["A"]


def test_lexical_search_fixes_groups_in_order():
    result = lexical_search(["A", "B"], coupled_oracle, by=0.1, maxep=1.0)
    assert result.resolved == ["A", "B"]
    assert result.unresolved == []
    assert result.complete
    assert result.eps["A"] == pytest.approx(0.3)
    assert result.eps["B"] == pytest.approx(0.7)


def test_lexical_first_group_matches_isolated_search():
    result = lexical_search(["A", "B"], coupled_oracle, by=0.1, maxep=1.0)
    isolated = bin_search(0.0, 1.0, 0.1, lambda e: coupled_oracle({"A": e, "B": np.inf}))
    assert result.eps["A"] == isolated


def test_lexical_search_reverse_order():
    result = lexical_search(["B", "A"], coupled_oracle, by=0.1, maxep=1.0)
    # with A unconstrained, B is satisfied at its lower bound, which then forces A up
    assert result.eps["B"] == 0.0
    assert result.eps["A"] == pytest.approx(1.0)
    assert result.resolved == ["B", "A"]


def test_lexical_search_partial_result():
    result = lexical_search(
        ["A", "B", "C"],
        lambda eps: eps["B"] >= 2.0,
        by=0.5,
        maxep=1.0,
        init_eps={"A": 1e20, "B": 1e20, "C": 1e20},
    )
    assert result.resolved == ["A"]
    assert result.unresolved == ["B", "C"]
    assert not result.complete
    assert result.eps["B"] == 1e20
    assert result.eps["C"] == 1e20


def test_lexical_search_per_group_lower_bound():
    result = lexical_search(["A", "B"], coupled_oracle, by=0.1, maxep=1.0, lowerep={"A": 0.5})
    assert result.eps["A"] == pytest.approx(0.5)
    assert result.eps["B"] == pytest.approx(0.5)


def test_lexical_search_needs_groups():
    with pytest.raises(BalsynthConfigError):
        lexical_search([], coupled_oracle, by=0.1, maxep=1.0)
