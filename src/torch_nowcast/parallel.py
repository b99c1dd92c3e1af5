"""Run independent filters concurrently.

A single run is sequential in time, but runs under different models, or rooted at different starting
steps, share nothing: each one owns its buffers. They are dispatched on a thread pool (torch releases
the GIL in its kernels). Errors are not swallowed: the first failing run raises in the caller.
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Mapping, Sequence

import torch

from .kalman_filter import FilterResult, GaussianState, KalmanFilter, Trajectory

logger = logging.getLogger(__name__)


def filter_configurations(
    state: GaussianState,
    measures: torch.Tensor,
    configurations: Mapping[str, KalmanFilter],
    *,
    max_workers: int | None = None,
) -> dict[str, FilterResult]:
    """Run `KalmanFilter.filter` on the same measures for several models.

    Typically used to compare process models and process noise structures (e.g. with and without flux
    between regions, independent or correlated noise).

    Args:
        state (GaussianState): Initial prior, shared by all the runs (it is never modified).
            Shape (mean): ``(dim_x, 1)``
            Shape (covariance): ``(dim_x, dim_x)``
        measures (torch.Tensor): Sequence of measures over time, NaN for missing entries.
            Shape: ``(T, dim_z, 1)``
        configurations (Mapping[str, KalmanFilter]): Filter of each configuration, by name.
        max_workers (int | None): Maximum number of threads. Default to the executor default.

    Returns:
        dict[str, FilterResult]: The results of each configuration, by name.
    """
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {name: executor.submit(kf.filter, state, measures) for name, kf in configurations.items()}
        results = {name: future.result() for name, future in futures.items()}

    logger.info("Filtered %d configurations", len(results))
    return results


def staggered_nowcasts(
    kf: KalmanFilter,
    state: GaussianState,
    measures: torch.Tensor,
    start_steps: Sequence[int],
    horizon=16,
    *,
    max_workers: int | None = None,
) -> dict[int, Trajectory]:
    """Reproduce the operational updates that would have been issued at several past steps.

    For each start step ``s``, the history ``measures[:s]`` is filtered from ``state``, then the operational
    update assimilates ``measures[s]`` and forecasts ``horizon`` steps ahead. Comparing the trajectories
    with the measures that followed evaluates the forecasts.

    Args:
        kf (KalmanFilter): Filter to use.
        state (GaussianState): Initial prior at step 0.
            Shape (mean): ``(dim_x, 1)``
            Shape (covariance): ``(dim_x, dim_x)``
        measures (torch.Tensor): Sequence of measures over time, NaN for missing entries.
            Shape: ``(T, dim_z, 1)``
        start_steps (Sequence[int]): Steps of the nowcasts. Each one in [0, T).
        horizon (int): Number of forecast steps after each nowcast.
            Default: 16
        max_workers (int | None): Maximum number of threads. Default to the executor default.

    Returns:
        dict[int, Trajectory]: The trajectory rooted at each start step.
    """
    for start in start_steps:
        if not 0 <= start < measures.shape[0]:
            raise IndexError(f"Start step {start} is out of the measures range [0, {measures.shape[0]})")

    def run(start: int) -> Trajectory:
        prior = kf.filter(state, measures[:start]).forecasts[-1]
        return kf.nowcast(prior, measures[start], horizon)

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {start: executor.submit(run, start) for start in start_steps}
        trajectories = {start: future.result() for start, future in futures.items()}

    logger.info("Computed %d staggered nowcasts with a %d steps horizon", len(trajectories), horizon)
    return trajectories
