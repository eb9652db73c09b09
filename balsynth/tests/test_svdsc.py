import numpy as np
import pytest

from balsynth import SVDSC
from balsynth.config_models import SVDSCConfig
from balsynth.exceptions import BalsynthConfigError


def test_svdsc_creation(small_panel):
    df, metadata = small_panel
    estimator = SVDSC({"df": df, "metadata": metadata, "r": 3})
    assert isinstance(estimator.config, SVDSCConfig)
    assert estimator.method == "synth"
    assert estimator.r == 3


@pytest.mark.parametrize("r, unit_mean", [(3, False), (3, True), (0, True)])
def test_svdsc_synth(small_panel, r, unit_mean):
    df, metadata = small_panel
    results = SVDSC({"df": df, "metadata": metadata, "r": r, "unit_mean": unit_mean}).fit()

    weights = np.array(list(results.weights.donor_weights.values()))
    assert weights.shape == (20,)
    assert np.all(weights >= 0)
    assert weights.sum() == pytest.approx(1.0)
    assert results.method_details.method_name == "SVDSC (synth)"
    assert results.fit.dual.size == 0
    assert results.group_fits["outcome"].dual.size == 0
    assert results.feasible


def test_svdsc_balance_on_reduced_basis(small_panel):
    df, metadata = small_panel
    results = SVDSC({"df": df, "metadata": metadata, "method": "balance", "r": 3, "hyperparam": 1e3}).fit()
    assert results.feasible
    assert results.fit.dual.shape == (3,)
    np.testing.assert_allclose(list(results.weights.donor_weights.values()), np.full(20, 0.05))
    assert results.group_fits["outcome"].dual.size == 0


def test_svdsc_rank_too_large(small_panel):
    df, metadata = small_panel
    with pytest.raises(BalsynthConfigError):
        SVDSC({"df": df, "metadata": metadata, "r": 50}).fit()
