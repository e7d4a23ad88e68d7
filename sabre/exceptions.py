"""
sabre/exceptions.py

Error kinds raised by the sabre pipeline stages.

Structural problems (a malformed partition, a singular robust scatter) abort
their stage. Per-item problems (one sample, one coordinate) are raised by the
single-item operations and collected by the table/matrix operations so the
caller can decide what to do with each item.
"""

from typing import Optional


class SabreError(Exception):
    """Base class for all sabre errors."""


class InvalidPartitionError(SabreError, ValueError):
    """The sequential binary partition does not describe a strict binary tree."""

    def __init__(self, message: str, node: Optional[int] = None):
        self.node = node
        if node is not None:
            message = f"split {node}: {message}"
        super().__init__(message)


class NonPositiveFillError(SabreError, ValueError):
    """Raw parts sum to at least the closure total, leaving no room for the filling value."""

    def __init__(self, sample_id, fill: float, total: float):
        self.sample_id = sample_id
        self.fill = fill
        self.total = total
        where = f"sample {sample_id!r}" if sample_id is not None else "sample"
        super().__init__(
            f"{where}: raw parts exceed the closure total {total:g} "
            f"(filling value would be {fill:g})."
        )


class DetrendConvergenceError(SabreError, RuntimeError):
    """The mixed model for one coordinate could not be fitted."""

    def __init__(self, coordinate, reason: str = "optimizer did not converge"):
        self.coordinate = coordinate
        self.reason = reason
        self.failures = []
        super().__init__(f"coordinate {coordinate!r}: {reason}")


class DetrendTimeoutError(DetrendConvergenceError):
    """The mixed model fit ran past the caller's wall-clock budget."""

    def __init__(self, coordinate, budget: Optional[float] = None):
        self.budget = budget
        if budget is None:
            reason = "deadline passed before the fit finished"
        else:
            reason = f"exceeded time budget of {budget:g} s"
        super().__init__(coordinate, reason)


class DegenerateScatterError(SabreError, ValueError):
    """A valid robust scatter matrix cannot be formed for the coordinate matrix."""

    def __init__(self, message: str, n_samples: int, n_features: int):
        self.n_samples = n_samples
        self.n_features = n_features
        super().__init__(f"{message} (n_samples={n_samples}, n_features={n_features})")
