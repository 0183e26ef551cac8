"""Failure kinds raised by the cleaning and inference stages.

All of them are recoverable: a caller may skip the failing test or
group and carry on with the rest of the run.
"""


class AnalysisError(ValueError):
    """Base class for recoverable analysis failures."""


class InsufficientDataError(AnalysisError):
    """A test's preconditions on group size or level count are unmet."""


class DegenerateDistributionError(AnalysisError):
    """Variance is zero where the test needs it to be nonzero."""


class InvalidRecordError(AnalysisError):
    """A trip record violates a precondition the RecordSource should guarantee."""
