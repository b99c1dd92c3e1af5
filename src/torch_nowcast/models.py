"""Helpers for building regional Kalman filters.

The state holds one value per region (signal). Regions are linked by a symmetric adjacency matrix
``A`` (``A[i, j] > 0`` when regions ``i`` and ``j`` are neighbours), from which this module derives:

- a process matrix with a diffusion (flux) term between adjacent regions,
- a process noise covariance, independent or correlated across regions,
- a diagonal measurement noise covariance.

These helpers are designed to integrate seamlessly with :class:`KalmanFilter`. They only build
matrices from given coefficients: estimating these coefficients is left to the user.
"""

from __future__ import annotations

import torch

from .errors import DimensionMismatchError
from .kalman_filter import KalmanFilter


def laplacian(adjacency: torch.Tensor) -> torch.Tensor:
    """Compute the graph Laplacian ``L = D - A`` of a (weighted) adjacency matrix.

    Self loops are ignored: the diagonal of ``A`` is not used.

    Example:
        >>> laplacian(torch.tensor([[0.0, 1.0, 0.0], [1.0, 0.0, 1.0], [0.0, 1.0, 0.0]]))
        tensor([[ 1., -1.,  0.],
                [-1.,  2., -1.],
                [ 0., -1.,  1.]])

    Args:
        adjacency (torch.Tensor): Symmetric adjacency matrix between regions.
            Shape: ``(n, n)``

    Returns:
        torch.Tensor: Graph Laplacian
            Shape: ``(n, n)``
    """
    _check_adjacency(adjacency)

    adjacency = adjacency - torch.diag_embed(adjacency.diagonal())
    return torch.diag_embed(adjacency.sum(dim=-1)) - adjacency


def flux_process_matrix(adjacency: torch.Tensor, alpha=0.0, decay=1.0) -> torch.Tensor:
    r"""Create the process matrix ``M`` of a diffusion between adjacent regions.

    Each region keeps ``decay`` of its value and exchanges a flux proportional to ``alpha`` with its neighbours:

    x_i(t + 1) = decay * x_i(t) + alpha * \sum_{j \sim i} A_{ij} (x_j(t) - x_i(t))

    that is ``M = decay * I - alpha * L``. With ``decay = 1``, the total over regions is conserved.
    The model is stable (no eigenvalue above 1 in magnitude) as long as ``alpha * max(eig(L)) <= decay + 1``.

    Example:
        - Two adjacent regions with ``alpha = 0.1``::

            [
                [0.9, 0.1],
                [0.1, 0.9],
            ]

    Args:
        adjacency (torch.Tensor): Symmetric adjacency matrix between regions.
            Shape: ``(n, n)``
        alpha (float): Flux coefficient. 0 leads to independent regions.
            Default: 0.0
        decay (float): Intrinsic dynamic of each region (1 for a random walk).
            Default: 1.0

    Returns:
        torch.Tensor: Process matrix ``M``
            Shape: ``(n, n)``
    """
    eye = torch.eye(adjacency.shape[-1], dtype=adjacency.dtype, device=adjacency.device)
    return decay * eye - alpha * laplacian(adjacency)


def process_noise(
    std: float | torch.Tensor,
    correlation=0.0,
    adjacency: torch.Tensor | None = None,
    *,
    dim: int | None = None,
    dtype: torch.dtype | None = None,
) -> torch.Tensor:
    """Create the process noise covariance ``Q``.

    Three structures are supported:
    - ``correlation == 0``: independent noise for each region (diagonal ``Q``),
    - ``adjacency is None``: the same correlation between every pair of regions,
    - otherwise: the correlation only holds between adjacent regions.

    In the last case, the correlation matrix is not PSD for every correlation (e.g. a large correlation on
    a star graph). A NonPositiveSemiDefiniteError is raised by the filter in that case.

    Args:
        std (float | torch.Tensor): Standard deviation of the noise for each region.
            Shape: broadcastable to ``(n,)``.
        correlation (float): Correlation coefficient between regions, in [-1, 1].
            Default: 0.0
        adjacency (torch.Tensor | None): Optional adjacency matrix restricting the correlations.
            Shape: ``(n, n)``
        dim (int | None): Number of regions. Only required if it cannot be inferred from ``std`` or ``adjacency``.
        dtype (torch.dtype | None): Dtype of the matrix. Default to the adjacency dtype, then to the ``std`` dtype.

    Returns:
        torch.Tensor: Process noise covariance ``Q``
            Shape: ``(n, n)``
    """
    if not -1 <= correlation <= 1:
        raise ValueError(f"correlation should be in [-1, 1]. Found {correlation}")

    if dtype is None:
        dtype = adjacency.dtype if adjacency is not None else _dtype_of(std)
    std = torch.as_tensor(std, dtype=dtype)
    if dim is None:
        dim = adjacency.shape[-1] if adjacency is not None else std.numel()
    std = torch.broadcast_to(std, (dim,))

    if adjacency is None:
        correlations = torch.full((dim, dim), correlation, dtype=std.dtype)
    else:
        _check_adjacency(adjacency, dim)
        correlations = correlation * (adjacency != 0).to(std.dtype)

    correlations.fill_diagonal_(1.0)
    return std[:, None] * correlations * std[None]


def measurement_noise(
    std: float | torch.Tensor, *, dim: int | None = None, dtype: torch.dtype | None = None
) -> torch.Tensor:
    """Create a diagonal measurement noise covariance ``R`` (independent errors between regions).

    Args:
        std (float | torch.Tensor): Standard deviation of the observation errors for each region.
            Shape: broadcastable to ``(n,)``.
        dim (int | None): Number of regions. Only required if it cannot be inferred from ``std``.
        dtype (torch.dtype | None): Dtype of the matrix. Default to the ``std`` dtype (or torch default dtype).

    Returns:
        torch.Tensor: Measurement noise covariance ``R``
            Shape: ``(n, n)``
    """
    std = torch.as_tensor(std, dtype=dtype or _dtype_of(std))
    if dim is None:
        dim = std.numel()
    return torch.diag(torch.broadcast_to(std, (dim,)) ** 2)


def regional_kalman_filter(
    adjacency: torch.Tensor,
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    alpha=0.0,
    decay=1.0,
    correlation=0.0,
    correlate_neighbours_only=False,
    **kwargs,
) -> KalmanFilter:
    """Create a Kalman filter tracking one value per region, where every region is directly measured.

    Args:
        adjacency (torch.Tensor): Symmetric adjacency matrix between regions.
            Shape: ``(n, n)``
        measurement_std (float | torch.Tensor): Observation noise standard deviation.
            Shape: broadcastable to ``(n,)``.
        process_std (float | torch.Tensor): Process noise standard deviation.
            Shape: broadcastable to ``(n,)``.
        alpha (float): Flux coefficient between adjacent regions (see `flux_process_matrix`).
            Default: 0.0
        decay (float): Intrinsic dynamic of each region (see `flux_process_matrix`).
            Default: 1.0
        correlation (float): Correlation of the process noise between regions (see `process_noise`).
            Default: 0.0
        correlate_neighbours_only (bool): Restrict the process noise correlation to adjacent regions.
            Default: False
        **kwargs: Additional keyword arguments given to :class:`KalmanFilter` (``on_singular``, ...)

    Returns:
        torch_nowcast.KalmanFilter: Filter with ``H = I``.
    """
    adjacency = torch.as_tensor(adjacency)
    if not adjacency.is_floating_point():
        adjacency = adjacency.to(torch.get_default_dtype())
    _check_adjacency(adjacency)
    dim = adjacency.shape[-1]

    return KalmanFilter(
        flux_process_matrix(adjacency, alpha, decay).contiguous(),
        torch.eye(dim, dtype=adjacency.dtype),
        process_noise(
            process_std,
            correlation,
            adjacency if correlate_neighbours_only else None,
            dim=dim,
            dtype=adjacency.dtype,
        ),
        measurement_noise(measurement_std, dim=dim, dtype=adjacency.dtype),
        **kwargs,
    )


def _dtype_of(std: float | torch.Tensor) -> torch.dtype:
    if isinstance(std, torch.Tensor) and std.is_floating_point():
        return std.dtype
    return torch.get_default_dtype()


def _check_adjacency(adjacency: torch.Tensor, dim: int | None = None) -> None:
    if adjacency.ndim != 2 or adjacency.shape[0] != adjacency.shape[1]:  # noqa: PLR2004
        raise DimensionMismatchError(f"adjacency should be a square matrix. Found {tuple(adjacency.shape)}")
    if dim is not None and adjacency.shape[0] != dim:
        raise DimensionMismatchError(f"adjacency should have shape ({dim}, {dim}). Found {tuple(adjacency.shape)}")
    if not torch.equal(adjacency, adjacency.mT):
        raise ValueError("adjacency should be symmetric")
