"""Custom exception and warning classes for the fewcluster library."""

class FewClusterError(Exception):
    """Base class for all custom exceptions in the fewcluster library."""
    pass

class FewClusterConfigError(FewClusterError):
    """Exception raised for errors in configuration."""
    pass

class FewClusterDataError(FewClusterError):
    """Exception raised for errors related to input data."""
    pass

class FewClusterEstimationError(FewClusterError):
    """Exception raised for errors during the estimation process."""
    pass

class NoTreatedUnitsError(FewClusterDataError):
    """Raised when the panel contains no ever-treated unit."""
    pass

class InsufficientClustersError(FewClusterDataError):
    """Raised when there are too few clusters to estimate or resample."""
    pass

class AggregationFailedError(FewClusterEstimationError):
    """Raised when every unit-level ATT was excluded from the SDID aggregate."""
    pass

class DrawDegenerateError(FewClusterEstimationError):
    """Raised for a bootstrap or placebo draw that cannot produce a statistic.

    Draw loops catch this error and drop the draw.
    """
    pass

class RegressionSingularityError(FewClusterEstimationError):
    """Raised when a regressor is collinear with the absorbed fixed effects."""
    pass


class NegativePredictedVarianceWarning(UserWarning):
    """Issued when the Ferman-Pinto variance model predicts a negative variance."""
    pass
