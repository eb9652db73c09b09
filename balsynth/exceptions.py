"""Custom exception classes for the balsynth library."""

class BalsynthError(Exception):
    """Base class for all custom exceptions in the balsynth library."""
    pass

class BalsynthConfigError(BalsynthError):
    """Exception raised for errors in configuration."""
    pass

class BalsynthDataError(BalsynthError):
    """Exception raised for errors related to input data."""
    pass

class DimensionError(BalsynthDataError):
    """Exception raised when a design matrix, treatment vector or tolerance
    vector do not line up (row/column count mismatches)."""
    pass

class BalsynthEstimationError(BalsynthError):
    """Exception raised for errors during the estimation process."""
    pass

class SearchExhaustedError(BalsynthEstimationError):
    """Exception raised when a tolerance search runs out of candidates
    without finding a feasible synthetic control."""
    pass
