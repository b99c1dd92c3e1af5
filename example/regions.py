"""Example filtering and nowcasting noisy, partially observed regional data"""

import argparse
import logging

import matplotlib.pyplot as plt
import torch

import torch_nowcast
from torch_nowcast.parallel import filter_configurations


def ring_adjacency(n: int) -> torch.Tensor:
    """Adjacency of n regions on a ring (each region has 2 neighbours)"""
    adjacency = torch.zeros(n, n, dtype=torch.float64)
    for i in range(n):
        adjacency[i, (i + 1) % n] = 1.0
        adjacency[(i + 1) % n, i] = 1.0
    return adjacency


def generate_data(
    kf: torch_nowcast.KalmanFilter, n: int, missing: float, initial: torch.Tensor
) -> tuple[torch.Tensor, torch.Tensor]:
    """Simulate the linear model of the filter:

    x(t + 1) = M x(t) + N(0, Q)
    y(t) = x(t) + N(0, R), with a proportion `missing` of the entries set to NaN

    Args:
        kf (KalmanFilter): Model to simulate
        n (int): Size of the sequence to generate
        missing (float): Probability for each entry to be missing
        initial (torch.Tensor): Initial state
            Shape: (dim, 1)

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (T, dim, 1)
        torch.Tensor: y(t) measure for each state
            Shape: (T, dim, 1)
    """
    process_chol = torch.linalg.cholesky(kf.process_noise + 1e-12 * torch.eye(kf.state_dim, dtype=kf.dtype))
    measurement_chol = torch.linalg.cholesky(kf.measurement_noise)

    x = torch.empty(n, kf.state_dim, 1, dtype=kf.dtype)
    x[0] = initial
    for t in range(1, n):
        x[t] = kf.process_matrix @ x[t - 1] + process_chol @ torch.randn(kf.state_dim, 1, dtype=kf.dtype)

    y = x + measurement_chol @ torch.randn_like(x)
    y[torch.rand_like(y) < missing] = torch.nan
    return x, y


def main(regions: int, n: int, alpha: float, correlation: float, missing: float, horizon: int):
    adjacency = ring_adjacency(regions)
    kf = torch_nowcast.regional_kalman_filter(adjacency, 2.0, 0.5, alpha=alpha, correlation=correlation)

    print("Parameters")
    print(f"Regions: {regions} (ring)")
    print(f"Flux: {alpha}, Process noise correlation: {correlation}")
    print(f"Missing entries: {missing * 100:.0f}%")
    print(kf)

    x, y = generate_data(kf, n + horizon, missing, 10 * torch.randn(regions, 1, dtype=torch.float64))
    history, future = y[:n], x[n:]

    # Unknown initial state: centered on 0 with a std of 10
    initial_state = torch_nowcast.GaussianState(
        torch.zeros(regions, 1, dtype=torch.float64), 100 * torch.eye(regions, dtype=torch.float64)
    )

    # Compare the true model with an uncoupled one
    results = filter_configurations(
        initial_state,
        history[:-1],
        {
            "true model": kf,
            "independent": torch_nowcast.regional_kalman_filter(adjacency, 2.0, 0.5),
        },
    )
    for name, result in results.items():
        print(f"Filtering MSE ({name}): {(result.analyses.mean - x[: n - 1]).pow(2).mean()}")

    # Operational update with the last measure
    result = results["true model"]
    trajectory = kf.nowcast(result.forecasts[-1], history[-1], horizon)
    print(f"Nowcast MSE: {(trajectory.nowcast.mean - x[n - 1]).pow(2).mean()}")
    print(f"Forecast MSE: {(trajectory.forecasts.mean - future).pow(2).mean()}")

    lower, upper = trajectory.confidence_interval(0.95)
    filtered_lower, filtered_upper = result.analyses.confidence_interval(0.95)

    plt.rcParams["font.size"] = 20
    plt.figure(figsize=(24, 16))

    past = torch.arange(n - 1)
    ahead = torch.arange(n - 1, n + horizon)
    plt.plot(x[:, 0, 0], color="k", label="True state (region 0)")
    plt.plot(y[:n, 0, 0], "o", color="r", markersize=3.0, label="Observations")
    plt.plot(past, result.analyses.mean[:, 0, 0], color="y", label="Filtered")
    plt.fill_between(past, filtered_lower[:, 0, 0], filtered_upper[:, 0, 0], color="y", alpha=0.5)
    plt.plot(ahead, trajectory.states.mean[:, 0, 0], color="b", label="Nowcast & forecasts")
    plt.fill_between(ahead, lower[:, 0, 0], upper[:, 0, 0], color="b", alpha=0.3)

    plt.xlabel("t")
    plt.ylabel("x")
    plt.legend(loc="upper left")
    plt.show()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Kalman filter example, nowcasting noisy regional data")
    parser.add_argument("--regions", default=6, type=int, help="Number of regions")
    parser.add_argument("--n", default=200, type=int, help="Number of observed time steps")
    parser.add_argument("--alpha", default=0.1, type=float, help="Flux between adjacent regions")
    parser.add_argument("--correlation", default=0.3, type=float, help="Process noise correlation")
    parser.add_argument("--missing", default=0.2, type=float, help="Proportion of missing observations")
    parser.add_argument("--horizon", default=16, type=int, help="Number of forecast steps")

    args = parser.parse_args()

    main(args.regions, args.n, args.alpha, args.correlation, args.missing, args.horizon)
