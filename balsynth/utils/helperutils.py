import logging
import warnings
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Tuple

import cvxpy
import numpy as np
import pydantic

from balsynth.config_models import BaseEstimatorConfig, FitResult
from balsynth.exceptions import (
    BalsynthConfigError,
    BalsynthDataError,
    BalsynthEstimationError,
)
from balsynth.utils.datautils import KEY_TRT, KEY_X, format_data, ipw_from_synth

logger = logging.getLogger(__name__)


@contextmanager
def estimation_errors(method_name: str) -> Iterator[None]:
    """Re-raise library errors unchanged; wrap everything else with the cause chained."""
    try:
        yield
    except BalsynthDataError:  # Re-raise specific data-related errors from utilities.
        raise
    except BalsynthConfigError:  # Re-raise specific configuration-related errors.
        raise
    except BalsynthEstimationError:
        raise
    except pydantic.ValidationError as e_val:
        raise BalsynthEstimationError(f"Error validating {method_name} results: {e_val}") from e_val
    except (cvxpy.error.SolverError, cvxpy.error.DCPError) as e_cvx:
        raise BalsynthEstimationError(f"CVXPY solver error in {method_name}: {e_cvx}") from e_cvx
    except KeyError as e_key:
        raise BalsynthDataError(f"Missing expected key during {method_name} data processing: {e_key}") from e_key
    except IndexError as e_idx:
        raise BalsynthDataError(f"Index out of bounds during {method_name} data processing: {e_idx}") from e_idx
    except np.linalg.LinAlgError as e_linalg:
        raise BalsynthEstimationError(f"Linear algebra error in {method_name}: {e_linalg}") from e_linalg
    except ValueError as e_val_general:
        raise BalsynthDataError(f"ValueError during {method_name} processing: {e_val_general}") from e_val_general
    except (TypeError, AttributeError, FloatingPointError) as e_num:
        raise BalsynthEstimationError(f"Unexpected error during {method_name} estimation: {e_num}") from e_num


def prepare_design(config: BaseEstimatorConfig) -> Tuple[Dict[str, Any], np.ndarray, np.ndarray]:
    """Format the panel once: the synth layout plus the unit-by-column design (treated row first)."""
    prepared = format_data(
        config.df,
        config.metadata,
        trt_unit=config.trt_unit,
        outcome_col=config.outcome_col,
        cols=config.cols,
    )
    design = ipw_from_synth(prepared)
    return prepared, design[KEY_X], design[KEY_TRT]


def warn_if_infeasible(method_name: str, fit: FitResult) -> None:
    if not fit.feasible:
        reason = "did not converge" if not fit.converged else "does not meet the requested balance"
        warnings.warn(
            f"{method_name}: the final weight fit {reason} "
            f"(l2 imbalance {fit.l2_error:.4g}); results are best-effort.",
            UserWarning,
        )
