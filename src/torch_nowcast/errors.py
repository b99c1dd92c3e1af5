"""Errors raised by torch-nowcast.

Every error derives from :class:`FilterError` (itself a ``ValueError``) and carries an optional ``step``:
the time step at which a filtering run failed. It is left to ``None`` for single ``update``/``predict`` calls.

Note that an observation without any observed entry is *not* an error: the analysis is simply the forecast.
"""

from __future__ import annotations


class FilterError(ValueError):
    """Base class of all filtering errors.

    Attributes:
        step (int | None): Time step of the failing run (if raised by a run).
    """

    def __init__(self, message: str, *, step: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def at_step(self, step: int) -> FilterError:
        """Attach the failing time step to the error (and its message).

        Returns:
            FilterError: self, to be re-raised.
        """
        self.step = step
        self.args = (f"[step {step}] {self.message}",)
        return self


class DimensionMismatchError(FilterError):
    """An input matrix/vector has a shape that does not match the state or measure dimension."""


class NumericalSingularityError(FilterError):
    """The innovation covariance ``H P Hᵀ + R`` cannot be factorized (not invertible)."""


class NonPositiveSemiDefiniteError(FilterError):
    """A covariance input is not symmetric positive semi-definite."""


class NonFiniteMeasureError(FilterError):
    """An observed entry of a measure is infinite (missing entries must be NaN)."""
