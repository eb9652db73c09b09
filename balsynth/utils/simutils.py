import numpy as np
import pandas as pd
from typing import Optional, Tuple, Dict, Any

from balsynth.exceptions import BalsynthConfigError


def sim_factor_model(
    n_controls: int,
    t_pre: int,
    t_post: int,
    n_factors: int,
    n_outcomes: int = 1,
    seed: Optional[int] = None,
    effect: float = 0.0,
    noise_sd: float = 1.0,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """Simulate a long panel from a linear factor model.

    ``Y[i, t, k] = lambda_i . f_{t,k} / sqrt(n_factors) + noise``, with unit
    loadings shared across outcomes and factors drawn per outcome. Unit 0 is
    treated from period ``t_pre`` on and receives ``effect`` in every
    post-period.

    Parameters
    ----------
    n_controls : int
        Number of control units (units 1..n_controls).
    t_pre, t_post : int
        Number of pre- and post-treatment periods; times are 0..t_pre+t_post-1.
    n_factors : int
        Number of latent factors.
    n_outcomes : int, default 1
        Number of outcome types, labelled 1..n_outcomes in ``outcome_id``.
    seed : int, optional
        Seed for ``np.random.default_rng``.
    effect : float, default 0.0
        Additive treatment effect on the treated unit's post-period outcomes.
    noise_sd : float, default 1.0
        Standard deviation of the idiosyncratic noise.

    Returns
    -------
    Tuple[pd.DataFrame, Dict[str, Any]]
        Long panel with columns ``unit``, ``time``, ``outcome``, ``treated``
        and ``outcome_id``, and metadata with ``t_int`` (the first treated
        period) and ``trt_unit``.
    """
    if n_controls < 1 or t_pre < 1 or t_post < 0 or n_factors < 1 or n_outcomes < 1:
        raise BalsynthConfigError(
            "sim_factor_model needs n_controls, t_pre, n_factors, n_outcomes >= 1 and t_post >= 0."
        )
    if noise_sd < 0:
        raise BalsynthConfigError("noise_sd must be non-negative.")

    rng = np.random.default_rng(seed)
    n_units = n_controls + 1
    n_times = t_pre + t_post

    loadings = rng.normal(size=(n_units, n_factors))
    units = np.repeat(np.arange(n_units), n_times)
    times = np.tile(np.arange(n_times), n_units)
    treated = ((units == 0) & (times >= t_pre)).astype(int)

    frames = []
    for k in range(1, n_outcomes + 1):
        factors = rng.normal(size=(n_times, n_factors))
        y = loadings @ factors.T / np.sqrt(n_factors)
        y = y + rng.normal(scale=noise_sd, size=y.shape)
        y[0, t_pre:] += effect
        frames.append(pd.DataFrame({
            "unit": units,
            "time": times,
            "outcome": y.ravel(),
            "treated": treated,
            "outcome_id": k,
        }))

    df = pd.concat(frames, ignore_index=True)
    metadata = {"t_int": t_pre, "trt_unit": 0}
    return df, metadata
