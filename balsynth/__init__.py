from .estimators.balancer import BALANCER
from .estimators.maxent import MAXENT
from .estimators.binsearch import BINSEARCH
from .estimators.lexical import LEXICAL
from .estimators.seplasso import SEPLASSO
from .estimators.svdsc import SVDSC
from .estimators.mcp import MCP
from .estimators.balancercv import BALANCERCV
from .utils.simutils import sim_factor_model

# Define __all__ to specify the public API of the balsynth package
__all__ = [
    "BALANCER",
    "MAXENT",
    "BINSEARCH",
    "LEXICAL",
    "SEPLASSO",
    "SVDSC",
    "MCP",
    "BALANCERCV",
    "sim_factor_model",
]
