"""
Exception hierarchy for the experiment statistics engine.

Every error is raised synchronously and left for the caller to handle;
nothing in the engine retries.
"""
from typing import Any, Optional


class StatsEngineError(Exception):
    """Base exception for all engine errors."""


class InvalidInputError(StatsEngineError):
    """Raised when an input parameter cannot be used.

    Attributes:
        field: Name of the offending parameter.
        value: The rejected value.
    """

    def __init__(self, message: str, *, field: str = "", value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


class InvalidRangeError(InvalidInputError):
    """A rate, probability, alpha or power parameter is outside its range."""


class InvalidPriorError(InvalidInputError):
    """Beta prior parameters must both be strictly positive."""


class InsufficientDataError(InvalidInputError):
    """Zero pulls/assignments where a rate or Z-statistic is requested."""


class InsufficientVariantsError(StatsEngineError):
    """Fewer than two variants were supplied where a comparison is required."""

    def __init__(self, message: str, *, variant_count: int = 0):
        super().__init__(message)
        self.variant_count = variant_count


class ExperimentError(StatsEngineError):
    """Base for errors tied to a specific experiment."""

    def __init__(self, message: str, *, experiment_id: Optional[int] = None):
        super().__init__(message)
        self.experiment_id = experiment_id


class ExperimentNotFoundError(ExperimentError):
    pass


class StateNotFoundError(ExperimentError):
    """Mode state was never initialized for a variant."""

    def __init__(self, message: str, *, experiment_id: Optional[int] = None, variant_id: Optional[int] = None):
        super().__init__(message, experiment_id=experiment_id)
        self.variant_id = variant_id


class AnalysisModeError(ExperimentError):
    """The operation does not match the experiment's analysis mode."""


class PlanNotFoundError(ExperimentError):
    """Sequential analysis was requested before a plan was initialized."""


class PlanExhaustedError(ExperimentError):
    """All planned interim analyses have been performed."""

    def __init__(self, message: str, *, experiment_id: Optional[int] = None, check_number: int = 0):
        super().__init__(message, experiment_id=experiment_id)
        self.check_number = check_number
