"""Torch-Nowcast: Kalman filtering and nowcasting of correlated, partially observed signals in PyTorch.

torch-nowcast estimates the latent state of several correlated signals (typically spatially adjacent
regions) from noisy time series where any entry may be missing. It fuses the observations with a linear
dynamic model, where regions can exchange a flux with their neighbours, and provides both:

- an offline replay over a full history, keeping every forecast and analysis (`KalmanFilter.filter`),
- an operational update for live systems: assimilate the latest observation and forecast a fixed horizon
  ahead (`KalmanFilter.nowcast`).

Key features
------------
- **Missing data**: at each time step, the analysis only involves the observed signals. The linear
  algebra works on right-sized matrices, and a time step without observation leaves the forecast untouched.
- **Robust analysis**: the innovation covariance is factorized with Cholesky. A singular one is reported
  (NumericalSingularityError) or handled with a configurable fallback.
- **Checked inputs**: shapes and covariances are validated before any computation, and every produced
  covariance stays symmetric PSD.
- **Regional models**: helpers build the flux process matrix and correlated noises from an adjacency matrix.

Getting started
---------------
The core API consists of:
- :class:`~torch_nowcast.GaussianState` to represent Gaussian means/covariances.
- :class:`~torch_nowcast.KalmanFilter` with :meth:`~torch_nowcast.KalmanFilter.predict`,
  :meth:`~torch_nowcast.KalmanFilter.update`, :meth:`~torch_nowcast.KalmanFilter.filter`
  and :meth:`~torch_nowcast.KalmanFilter.nowcast`.
- :func:`~torch_nowcast.regional_kalman_filter` to build ``M, H, Q, R`` from an adjacency matrix.

Notes on shapes
---------------
torch-nowcast uses column vectors. State and measurement vectors must have shape ``(..., dim, 1)``.
Missing entries of a measure are NaN.
"""

from .config import NowcastConfig
from .errors import (
    DimensionMismatchError,
    FilterError,
    NonFiniteMeasureError,
    NonPositiveSemiDefiniteError,
    NumericalSingularityError,
)
from .kalman_filter import FilterResult, GaussianState, KalmanFilter, Trajectory
from .models import regional_kalman_filter

__all__ = [
    "DimensionMismatchError",
    "FilterError",
    "FilterResult",
    "GaussianState",
    "KalmanFilter",
    "NonFiniteMeasureError",
    "NonPositiveSemiDefiniteError",
    "NowcastConfig",
    "NumericalSingularityError",
    "Trajectory",
    "regional_kalman_filter",
]
__version__ = "0.1.0"
