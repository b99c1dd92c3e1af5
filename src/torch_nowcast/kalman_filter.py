from __future__ import annotations

import dataclasses
import logging
from typing import overload

import torch
import torch.linalg

from .errors import DimensionMismatchError, FilterError, NonFiniteMeasureError, NumericalSingularityError
from .linalg import (
    check_covariance,
    check_matrix,
    check_vector,
    clip_negative_eigenvalues,
    observed_indices,
    symmetrize,
)

logger = logging.getLogger(__name__)

# Note on the analysis step:
# The innovation covariance S = H P Hᵀ + R is never inverted. Its Cholesky factor is used to solve S Kᵀ = H Pᵀ,
# which is both more robust and the natural place to detect a singular S (the factorization fails).
# Its dimension is the number of observed entries at the current time step, not the measure dimension.

SINGULAR_POLICIES = ("raise", "pinv", "skip")


@dataclasses.dataclass
class GaussianState:
    """Gaussian state for Kalman filtering.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - State/measurement vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` are batch dimensions, or a time dimension for trajectories.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor

    def clone(self) -> GaussianState:
        """Return a deep copy of the state.

        Returns:
            GaussianState: The cloned state
        """
        return GaussianState(self.mean.clone(), self.covariance.clone())

    def __getitem__(self, idx) -> GaussianState:
        """Index/slice along the leading dimensions.

        Args:
            idx (Any): Index/slice applied to the leading dimensions.

        Returns:
            GaussianState: Indexed GaussianState (sharing memory with self when torch does).
        """
        return GaussianState(self.mean[idx], self.covariance[idx])

    def __setitem__(self, idx, value: GaussianState) -> None:
        """Assign into the leading dimensions.

        Args:
            idx (Any): Index/slice applied to the leading dimensions to be modified.
            value (GaussianState): GaussianState with compatible shapes.
        """
        if isinstance(value, GaussianState):
            self.mean[idx] = value.mean
            self.covariance[idx] = value.covariance
            return

        raise NotImplementedError("Only GaussianState assignment is supported.")

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(self.mean.to(fmt), self.covariance.to(fmt))

    @property
    def dim(self) -> int:
        """Dimension of the state."""
        return self.mean.shape[-2]

    @property
    def variance(self) -> torch.Tensor:
        """Marginal variance of each signal (diagonal of the covariance), as a column vector.

        Shape: ``(..., dim, 1)``
        """
        return self.covariance.diagonal(dim1=-2, dim2=-1)[..., None]

    @property
    def std(self) -> torch.Tensor:
        """Marginal standard deviation of each signal, as a column vector.

        Shape: ``(..., dim, 1)``
        """
        return self.variance.clamp(min=0).sqrt()

    def trace(self) -> torch.Tensor:
        """Total variance (trace of the covariance). A scalar proxy of the uncertainty.

        Returns:
            torch.Tensor: Trace of the covariance
            Shape: ``(...)``
        """
        return self.covariance.diagonal(dim1=-2, dim2=-1).sum(dim=-1)

    def confidence_interval(self, level=0.95) -> tuple[torch.Tensor, torch.Tensor]:
        """Marginal (per signal) confidence interval ``mean ± z * std``.

        Args:
            level (float): Probability mass inside the interval, in (0, 1).
                Default: 0.95

        Returns:
            torch.Tensor: Lower bounds
                Shape: ``(..., dim, 1)``
            torch.Tensor: Upper bounds
                Shape: ``(..., dim, 1)``
        """
        if not 0 < level < 1:
            raise ValueError(f"Confidence level should be in (0, 1). Found {level}")

        normal = torch.distributions.Normal(
            torch.zeros((), dtype=self.mean.dtype, device=self.mean.device),
            torch.ones((), dtype=self.mean.dtype, device=self.mean.device),
        )
        z = normal.icdf(torch.tensor((1 + level) / 2, dtype=self.mean.dtype, device=self.mean.device))
        std = self.std
        return self.mean - z * std, self.mean + z * std


@dataclasses.dataclass
class FilterResult:
    """Complete trajectories of a batch filtering run.

    Entry ``t`` of ``analyses`` is the state after assimilating ``measures[t]``. It was computed from
    entry ``t`` of ``forecasts``, and entry ``t + 1`` of ``forecasts`` is its forecast.
    ``forecasts[0]`` is the initial prior, and ``forecasts[T]`` forecasts the step after the last measure.

    Attributes:
        forecasts (GaussianState): Forecast (prior) states.
            Shape (mean): ``(T + 1, ..., dim_x, 1)``
            Shape (covariance): ``(T + 1, ..., dim_x, dim_x)``
        analyses (GaussianState): Analysis (posterior) states.
            Shape (mean): ``(T, ..., dim_x, 1)``
            Shape (covariance): ``(T, ..., dim_x, dim_x)``
    """

    forecasts: GaussianState
    analyses: GaussianState

    def __len__(self) -> int:
        return self.analyses.mean.shape[0]

    @property
    def prior(self) -> GaussianState:
        """Initial prior given to the run."""
        return self.forecasts[0]

    @property
    def last_analysis(self) -> GaussianState:
        """Analysis at the last time step (the current estimate after the run).

        Raises:
            IndexError: If the run had no measure (use `prior` instead).
        """
        if len(self) == 0:
            raise IndexError("No analysis in a run over 0 measures. The current estimate is the prior.")
        return self.analyses[-1]


@dataclasses.dataclass
class Trajectory:
    """Consolidated output of an operational update.

    Index 0 is the nowcast: the estimate at the time of the new measure, after assimilating it.
    Index ``k`` (1 <= k <= horizon) is the pure forecast ``k`` steps after the nowcast.

    Attributes:
        states (GaussianState): Nowcast followed by the forecasts.
            Shape (mean): ``(horizon + 1, ..., dim_x, 1)``
            Shape (covariance): ``(horizon + 1, ..., dim_x, dim_x)``
    """

    states: GaussianState

    def __len__(self) -> int:
        return self.states.mean.shape[0]

    def __getitem__(self, idx) -> GaussianState:
        return self.states[idx]

    @property
    def horizon(self) -> int:
        """Number of forecast steps after the nowcast."""
        return len(self) - 1

    @property
    def nowcast(self) -> GaussianState:
        """Estimate after assimilating the new measure (index 0)."""
        return self.states[0]

    @property
    def forecasts(self) -> GaussianState:
        """Pure forecasts for the steps 1 to horizon (indices 1 to horizon)."""
        return self.states[1:]

    def confidence_interval(self, level=0.95) -> tuple[torch.Tensor, torch.Tensor]:
        """Marginal confidence intervals of every state of the trajectory.

        See :meth:`GaussianState.confidence_interval`.
        """
        return self.states.confidence_interval(level)


class KalmanFilter:
    """Kalman filter with missing data support, batch replay and operational nowcasting.

    This class estimates the latent state of several correlated signals (e.g. adjacent regions)
    under a linear Gaussian model:

        x_t = M x_{t-1} + w_t,   w_t ~ N(0, Q)
        y_t = H x_t     + v_t,   v_t ~ N(0, R)

    where:
    - ``x_t`` is the hidden state (dimension ``dim_x``),
    - ``y_t`` is the observation (dimension ``dim_z``), whose entries may be missing (NaN),
    - ``M`` is the process matrix (intrinsic dynamics and coupling between signals),
    - ``Q`` is the process noise covariance (diagonal or correlated),
    - ``H`` is the observation (design) matrix, usually the identity,
    - ``R`` is the observation noise covariance.

    The model is fixed for the lifetime of the filter. Only the effective observation dimension varies
    from one time step to another, following which entries are observed.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Matrices have shape ``(dim, dim)`` (or ``(dim_z, dim_x)`` for ``H``).
    - Leading ``...`` batch dimensions of states are supported by ``predict`` and ``update``, as long as
      every state in the batch shares the same measure. Independent runs with different measures should
      be run separately (see :mod:`torch_nowcast.parallel`).

    Numerical notes:
    - Run in float64 when exact reproducibility matters or when variances span many orders of magnitude.
    - Every covariance produced is symmetrized. With ``enforce_psd``, negative eigenvalues created by
      round-off are also clipped.

    Attributes:
        process_matrix (torch.Tensor): Process matrix ``M``.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Observation matrix ``H``.
            Shape: ``(dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (torch.Tensor): Observation noise covariance ``R``.
            Shape: ``(dim_z, dim_z)``
        joseph_update (bool): If True, use the Joseph form covariance update for improved numerical stability.
            Default: False
        on_singular (str): What to do when the innovation covariance is singular:
            "raise" a NumericalSingularityError, use a "pinv" (pseudo-inverse) gain, or "skip" the analysis.
            Default: "raise"
        enforce_psd (bool): Clip negative eigenvalues of the produced covariances.
            Default: True
        psd_tolerance (float): Relative tolerance used when checking covariance inputs.
            Default: 1e-6
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        *,
        joseph_update=False,
        on_singular="raise",
        enforce_psd=True,
        psd_tolerance=1e-6,
    ) -> None:
        if on_singular not in SINGULAR_POLICIES:
            raise ValueError(f"on_singular should be one of {SINGULAR_POLICIES}. Found {on_singular!r}")

        self.process_matrix = process_matrix
        self.measurement_matrix = measurement_matrix
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.joseph_update = joseph_update
        self.on_singular = on_singular
        self.enforce_psd = enforce_psd
        self.psd_tolerance = psd_tolerance

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.measurement_matrix.shape[-2]

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self.process_matrix.dtype

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format (and the same options)
        """
        return KalmanFilter(
            self.process_matrix.to(fmt),
            self.measurement_matrix.to(fmt),
            self.process_noise.to(fmt),
            self.measurement_noise.to(fmt),
            joseph_update=self.joseph_update,
            on_singular=self.on_singular,
            enforce_psd=self.enforce_psd,
            psd_tolerance=self.psd_tolerance,
        )

    def validate(self) -> None:
        """Check the shapes of the model matrices and that noises are symmetric PSD.

        Raises:
            DimensionMismatchError: If a matrix has the wrong shape.
            NonPositiveSemiDefiniteError: If ``Q`` or ``R`` is not symmetric PSD.
        """
        check_matrix("process_matrix", self.process_matrix, self.state_dim, self.state_dim)
        check_matrix("measurement_matrix", self.measurement_matrix, self.measure_dim, self.state_dim)
        check_covariance("process_noise", self.process_noise, self.state_dim, self.psd_tolerance)
        check_covariance("measurement_noise", self.measurement_noise, self.measure_dim, self.psd_tolerance)

    def check_state(self, state: GaussianState) -> None:
        """Check that a state matches the filter and that its covariance is symmetric PSD.

        Raises:
            DimensionMismatchError: If the state does not have the filter dimension.
            NonPositiveSemiDefiniteError: If its covariance is not symmetric PSD.
        """
        check_vector("state.mean", state.mean, self.state_dim)
        check_covariance("state.covariance", state.covariance, self.state_dim, self.psd_tolerance)

    def predict(
        self,
        state: GaussianState,
        *,
        process_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Forecast step: compute the prior state on the next time step.

        From a state x_{t-1} | ... ~ N(mu_{t-1}, P_{t-1}), it applies the process model:

            x_t = M x_{t-1} + w_t,   w_t ~ N(0, Q)

        leading to a forecast x_t | ... ~ N(mu_t, P_t) with:

            mu_t = M mu_{t-1}
            P_t = M P_{t-1} Mᵀ + Q

        Args:
            state (GaussianState): Current state estimation (typically an analysis).
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            process_matrix (torch.Tensor | None): Optional override for registered process matrix ``M``.
                Shape: ``(..., dim_x, dim_x)``
            process_noise (torch.Tensor | None): Optional override for registered process noise ``Q``.
                Shape: ``(..., dim_x, dim_x)``

        Returns:
            GaussianState: Forecast on the next time step.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Raises:
            DimensionMismatchError: If the state or the matrices do not have the filter dimension.
            NonPositiveSemiDefiniteError: If the state covariance or ``Q`` is not symmetric PSD.
        """
        if process_matrix is None:
            process_matrix = self.process_matrix
        if process_noise is None:
            process_noise = self.process_noise

        check_vector("state.mean", state.mean, self.state_dim)
        check_covariance("state.covariance", state.covariance, self.state_dim, self.psd_tolerance)
        check_matrix("process_matrix", process_matrix, self.state_dim, self.state_dim)
        check_covariance("process_noise", process_noise, self.state_dim, self.psd_tolerance)

        return self._predict(state, process_matrix, process_noise)

    def _predict(
        self, state: GaussianState, process_matrix: torch.Tensor, process_noise: torch.Tensor
    ) -> GaussianState:
        """Forecast step on already checked inputs."""
        mean = process_matrix @ state.mean
        covariance = process_matrix @ state.covariance @ process_matrix.mT + process_noise

        return GaussianState(mean, self._finalize(covariance))

    def project(
        self,
        state: GaussianState,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Project a state into measurement space (usually the forecast state).

        From a state x_t | ... ~ N(mu_t, P_t), it applies the observation model:

            y_t = H x_t + v_t,   v_t ~ N(0, R)

        leading to a Gaussian state over ``y``: y_t | ... ~ N(H mu_t, S_t) with S_t = H P_t Hᵀ + R

        No missing data handling is done here: ``update`` calls it with ``H`` and ``R`` already
        restricted to the observed entries.

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measurement_matrix (torch.Tensor | None): Optional override for registered projection matrix ``H``.
                Shape: ``(..., dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for registered projection noise ``R``.
                Shape: ``(..., dim_z, dim_z)``

        Returns:
            GaussianState: Projected state in the measurement space.
                Shape (mean): ``(..., dim_z, 1)``
                Shape (covariance): ``(..., dim_z, dim_z)``
        """
        if measurement_matrix is None:
            measurement_matrix = self.measurement_matrix
        if measurement_noise is None:
            measurement_noise = self.measurement_noise

        mean = measurement_matrix @ state.mean
        covariance = measurement_matrix @ state.covariance @ measurement_matrix.mT + measurement_noise

        return GaussianState(mean, covariance)

    def update(
        self,
        state: GaussianState,
        measure: torch.Tensor,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Analysis step: condition a forecast on a (possibly partial) measure.

        Given a forecast x_t | ... ~ N(mu_t, P_t) and an observation y_t with missing entries set to NaN,
        it computes the analysis x_t | ..., y_t ~ N(mu'_t, P'_t):

        1. The observed entries are listed, and ``H``, ``R`` and ``y_t`` are restricted to them
           (``H_o``, ``R_o``, ``y_o``). Without any observed entry, the forecast is returned as is.
        2. Kalman gain: K = P_t H_oᵀ S^{-1}, with S = H_o P_t H_oᵀ + R_o (solved with Cholesky).
        3. Incorporate y_o:
            mu'_t = mu_t + K (y_o - H_o mu_t)
            P'_t = (I - K H_o) P_t   OR [JOSEPH_UPDATE] P'_t = (I - K H_o) P_t (I - K H_o)ᵀ + K R_o Kᵀ

        Args:
            state (GaussianState): Forecast state, typically the results of `predict`.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor): Single observation ``y_t`` (column vector), NaN for missing entries.
                Shape: ``(dim_z, 1)``
            measurement_matrix (torch.Tensor | None): Optional override for registered observation matrix ``H``.
                Shape: ``(dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for registered observation noise ``R``.
                Shape: ``(dim_z, dim_z)``

        Returns:
            GaussianState: Analysis state. It is ``state`` itself when nothing is observed.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Raises:
            DimensionMismatchError: If the inputs do not have consistent shapes.
            NonPositiveSemiDefiniteError: If the state covariance or ``R`` is not symmetric PSD.
            NonFiniteMeasureError: If an observed entry of the measure is infinite.
            NumericalSingularityError: If the innovation covariance is singular (and ``on_singular == "raise"``).
        """
        if measurement_matrix is None:
            measurement_matrix = self.measurement_matrix
        if measurement_noise is None:
            measurement_noise = self.measurement_noise

        dim_z = measurement_matrix.shape[-2]
        check_vector("state.mean", state.mean, self.state_dim)
        check_covariance("state.covariance", state.covariance, self.state_dim, self.psd_tolerance)
        check_matrix("measurement_matrix", measurement_matrix, dim_z, self.state_dim)
        check_covariance("measurement_noise", measurement_noise, dim_z, self.psd_tolerance)
        _check_measure(measure, dim_z)

        return self._update(state, measure, measurement_matrix, measurement_noise)

    def _update(
        self,
        state: GaussianState,
        measure: torch.Tensor,
        measurement_matrix: torch.Tensor,
        measurement_noise: torch.Tensor,
    ) -> GaussianState:
        """Analysis step on already checked inputs. Only the observed values of the measure are checked."""
        observed = observed_indices(measure)
        logger.debug("Analysis with %d/%d observed entries", observed.numel(), measure.shape[-2])
        if observed.numel() == 0:
            return state

        # Work only with the observed rows/columns
        measurement_matrix = measurement_matrix[..., observed, :]
        measurement_noise = measurement_noise[..., observed[:, None], observed]
        measure = measure[observed]

        infinite = ~torch.isfinite(measure[:, 0])
        if infinite.any():
            raise NonFiniteMeasureError(
                f"measure has infinite observed entries at indices {observed[infinite].tolist()}"
            )

        projection = self.project(state, measurement_matrix=measurement_matrix, measurement_noise=measurement_noise)
        residual = measure - projection.mean

        kalman_gain = self._kalman_gain(state, projection, measurement_matrix)
        if kalman_gain is None:
            return state

        mean = state.mean + kalman_gain @ residual

        if self.joseph_update:
            factor = torch.eye(self.state_dim, dtype=self.dtype, device=self.device) - kalman_gain @ measurement_matrix
            covariance = factor @ state.covariance @ factor.mT + kalman_gain @ measurement_noise @ kalman_gain.mT
        else:
            covariance = state.covariance - kalman_gain @ measurement_matrix @ state.covariance

        return GaussianState(mean, self._finalize(covariance))

    def filter(self, state: GaussianState, measures: torch.Tensor) -> FilterResult:
        """Replay analysis/forecast steps over a full sequence of measures.

        For each time step t, ``measures[t]`` is assimilated into the current forecast (the analysis),
        which is then forecasted to the next time step. The initial state is the prior at t=0, before
        seeing any measure. Every forecast and analysis is kept in the returned `FilterResult`.

        Measures may contain NaNs: only the observed entries are used at each time step, and a time step
        without any observed entry leaves the forecast unchanged.

        Args:
            state (GaussianState): Initial prior on the state at t=0, before seeing any of the measures.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measures (torch.Tensor): Sequence of measures over time.
                Shape: ``(T, dim_z, 1)``

        Returns:
            FilterResult: The T + 1 forecasts (including the prior) and the T analyses.

        Raises:
            FilterError: Any error of the model, the prior or at a given time step (with its ``step`` set).
        """
        self.validate()
        # Convert state to the right dtype and device
        state = state.to(self.dtype).to(self.device)
        self.check_state(state)
        if measures.ndim != 3 or measures.shape[1:] != (self.measure_dim, 1):  # noqa: PLR2004
            raise DimensionMismatchError(
                f"measures should have shape (T, {self.measure_dim}, 1). Found {tuple(measures.shape)}"
            )

        length = measures.shape[0]
        forecasts = _allocate(length + 1, state)
        analyses = _allocate(length, state)
        forecasts[0] = state

        for t, measure in enumerate(measures):
            # Convert on the fly the measure to avoid to store them all in cuda memory
            measure = measure.to(self.dtype).to(self.device, non_blocking=True)  # noqa: PLW2901

            try:
                state = self._update(state, measure, self.measurement_matrix, self.measurement_noise)
                analyses[t] = state
                state = self._predict(state, self.process_matrix, self.process_noise)
            except FilterError as error:
                raise error.at_step(t)  # noqa: B904

            forecasts[t + 1] = state

        logger.info(
            "Filtered %d time steps (%d observed entries out of %d)",
            length,
            (~torch.isnan(measures)).sum().item(),
            measures.numel(),
        )

        return FilterResult(forecasts, analyses)

    def nowcast(
        self, state: GaussianState, measure: torch.Tensor, horizon=16, *, update_first=True
    ) -> Trajectory:
        """Operational update: assimilate a single new measure and forecast ``horizon`` steps ahead.

        This is the resumable counterpart of `filter` for live systems: it only requires the current
        estimate and the newly arrived measure. The output collapses the analysis/forecast split: index 0
        is the nowcast, indices 1 to ``horizon`` the pure forecasts (see `Trajectory`).

        Resuming on the next time step is done by calling `nowcast` again with the returned nowcast and
        ``update_first=False`` (or, equivalently, with ``trajectory[1]`` and ``update_first=True``).

        Args:
            state (GaussianState): Current estimate.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor): New measure, NaN for missing entries.
                Shape: ``(dim_z, 1)``
            horizon (int): Number of forecast steps after the nowcast.
                Default: 16
            update_first (bool): If True, the measure is assimilated directly into ``state``, which is thus
                the forecast for the time of the measure. If False, ``state`` is the estimate at the previous
                time step and it is forecasted once before the analysis.
                Default: True

        Returns:
            Trajectory: The nowcast and the ``horizon`` forecasts.

        Raises:
            ValueError: If horizon is not a non-negative integer.
            FilterError: Any error of the model, the state or at a given step (with its ``step`` set
                to the trajectory index).
        """
        if isinstance(horizon, bool) or not isinstance(horizon, int) or horizon < 0:
            raise ValueError(f"horizon should be a non-negative integer. Found {horizon!r}")

        self.validate()
        # The current estimate is often a view on a stored trajectory: work on a copy
        state = state.to(self.dtype).to(self.device).clone()
        self.check_state(state)
        measure = measure.to(self.dtype).to(self.device)
        _check_measure(measure, self.measure_dim)

        states = _allocate(horizon + 1, state)
        step = 0

        try:
            if not update_first:
                state = self._predict(state, self.process_matrix, self.process_noise)
            state = self._update(state, measure, self.measurement_matrix, self.measurement_noise)
            states[0] = state

            for step in range(1, horizon + 1):
                state = self._predict(state, self.process_matrix, self.process_noise)
                states[step] = state
        except FilterError as error:
            raise error.at_step(step)  # noqa: B904

        logger.debug("Nowcast with a %d steps horizon", horizon)

        return Trajectory(states)

    def _kalman_gain(
        self, state: GaussianState, projection: GaussianState, measurement_matrix: torch.Tensor
    ) -> torch.Tensor | None:
        """Compute K = P Hᵀ S^{-1}, following ``on_singular`` when S cannot be factorized.

        Returns None when the analysis should be skipped.
        """
        chol_decomposition, info = torch.linalg.cholesky_ex(projection.covariance)
        if not (info != 0).any():
            # Find K without inversing S but by solving the linear system SKᵀ = (PHᵀ)ᵀ
            return torch.cholesky_solve(measurement_matrix @ state.covariance.mT, chol_decomposition).mT

        if self.on_singular == "raise":
            raise NumericalSingularityError(
                f"Innovation covariance is not invertible ({projection.mean.shape[-2]} observed entries)"
            )

        logger.warning("Singular innovation covariance: falling back to %s", self.on_singular)
        if self.on_singular == "skip":
            return None

        return state.covariance @ measurement_matrix.mT @ torch.linalg.pinv(projection.covariance, hermitian=True)

    def _finalize(self, covariance: torch.Tensor) -> torch.Tensor:
        """Enforce the symmetry (and optionally the PSD-ness) of a produced covariance."""
        covariance = symmetrize(covariance)
        if self.enforce_psd:
            covariance = clip_negative_eigenvalues(covariance)
        return covariance

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
        process = self._repr_pair("Process", ("M", self.process_matrix), ("Q", self.process_noise), 80)
        measurement = self._repr_pair(
            "Measurement", ("H", self.measurement_matrix), ("R", self.measurement_noise), 100
        )

        n_char = max(len(line) for line in (process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement])

    @classmethod
    def _repr_pair(
        cls, name: str, matrix: tuple[str, torch.Tensor], noise: tuple[str, torch.Tensor], linewidth: int
    ) -> str:
        """Display a matrix and its noise side by side, or one above the other when too wide."""
        with torch._tensor_str.printoptions(profile="short", sci_mode=False, linewidth=linewidth):  # noqa: SLF001
            matrix_repr = str(matrix[1]).split("\n")
            noise_repr = str(noise[1]).split("\n")

        first = f"{name}: {matrix[0]} = "
        indent = " " * len(first)
        matrix_header = [first] + [indent] * (len(matrix_repr) - 1)

        max_char_matrix = max(len(line) for line in matrix_repr)
        max_char_noise = max(len(line) for line in noise_repr)
        if max_char_matrix + max_char_noise <= cls._REPR_SPLIT_LENGTH:  # Single line
            matrix_repr = [line + " " * (max_char_matrix - len(line)) for line in matrix_repr]
            separator = f"  &  {noise[0]} = "
            separators = [separator] + [" " * len(separator)] * (len(matrix_repr) - 1)
            return "\n".join("".join(lines) for lines in zip(matrix_header, matrix_repr, separators, noise_repr))

        # Two lines
        noise_header = ["", " " * (len(name) + 2) + f"{noise[0]} = "] + [indent] * (len(noise_repr) - 1)
        return "\n".join(
            "".join(lines) for lines in zip(matrix_header + noise_header, [*matrix_repr, "", *noise_repr])
        )


def _allocate(length: int, state: GaussianState) -> GaussianState:
    """Allocate an uninitialized trajectory buffer of ``length`` states shaped like ``state``."""
    return GaussianState(
        torch.empty((length, *state.mean.shape), dtype=state.mean.dtype, device=state.mean.device),
        torch.empty((length, *state.covariance.shape), dtype=state.covariance.dtype, device=state.covariance.device),
    )


def _check_measure(measure: torch.Tensor, dim_z: int) -> None:
    """Check that a single measure is a ``(dim_z, 1)`` column vector."""
    check_vector("measure", measure, dim_z)
    if measure.ndim != 2:  # noqa: PLR2004
        raise DimensionMismatchError(f"measure should have shape ({dim_z}, 1). Found {tuple(measure.shape)}")
