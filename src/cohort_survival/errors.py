"""Exception, warning and marker types for the cohort survival engine.

Fatal problems (bad configuration, singular designs) are raised as exceptions.
Per-subject data problems are never raised: they are represented by the
``MISSING_DATE`` and ``UNCLASSIFIED`` markers and counted under a
``DropReason`` so that sample-size accounting stays auditable.
"""
from __future__ import annotations
from enum import Enum
from typing import Optional


class CohortSurvivalError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(CohortSurvivalError, ValueError):
    """Raised when a configuration object is internally inconsistent."""


class ConfigurationOverlap(ConfigurationError):
    """Raised when two exposure periods claim the same birth-period index.

    Attributes:
        first: Period id of the first overlapping period
        second: Period id of the second overlapping period
    """

    def __init__(self, first, second):
        self.first = first
        self.second = second
        super().__init__(
            f"Period boundaries overlap: period {first!r} and period {second!r} "
            f"share at least one birth-period index"
        )


class SchemaError(CohortSurvivalError, ValueError):
    """Raised when an input frame does not match its declared schema."""


class SingularDesign(CohortSurvivalError):
    """Raised when a design matrix is rank deficient and dropping is disabled.

    Attributes:
        column: Name of the first column found to be a linear combination
            of the preceding columns
        model: Model family that was being fitted, if known
    """

    def __init__(self, column: str, model: Optional[str] = None):
        self.column = column
        self.model = model
        where = f" ({model})" if model else ""
        super().__init__(
            f"Design matrix is rank deficient{where}: column {column!r} is a "
            f"linear combination of the preceding columns"
        )


class NonConvergence(CohortSurvivalError):
    """Raised on request when a fit did not converge within its iteration cap.

    Fitting routines never raise this themselves; they return a fitted model
    with ``FitStatus.NOT_CONVERGED``. Callers that want a hard failure call
    ``FittedModel.raise_for_status()``.
    """

    def __init__(self, model: str, n_iter: int, grad_norm: float, message: str = ""):
        self.model = model
        self.n_iter = n_iter
        self.grad_norm = grad_norm
        detail = f": {message}" if message else ""
        super().__init__(
            f"{model} did not converge after {n_iter} iterations "
            f"(gradient norm {grad_norm:.3e}){detail}"
        )


class NonConvergenceWarning(RuntimeWarning):
    """Warning emitted when an optimiser stops at its iteration cap."""


class DropReason(str, Enum):
    """Why a subject was removed from an analysis set."""
    MISSING_DATE = "missing_date"
    UNCLASSIFIED_EXPOSURE = "unclassified_exposure"
    INVALID_SURVIVAL_TIME = "invalid_survival_time"
    EXCLUDED_BY_RULE = "excluded_by_rule"
    BELOW_MIN_AGE = "below_min_age"


class _Marker:
    """Falsy singleton marker with a readable repr."""

    _instances: dict = {}

    def __new__(cls, name: str):
        if name not in cls._instances:
            inst = super().__new__(cls)
            inst._name = name
            cls._instances[name] = inst
        return cls._instances[name]

    def __bool__(self):
        return False

    def __repr__(self):
        return self._name

    def __reduce__(self):
        return (_Marker, (self._name,))


MISSING_DATE = _Marker("MISSING_DATE")
"""Returned by the date normaliser for absent or malformed raw dates."""

UNCLASSIFIED = _Marker("UNCLASSIFIED")
"""Returned by the exposure classifier for indices outside every period."""
