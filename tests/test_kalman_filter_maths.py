"""Test mathematical concepts about KF."""

import torch

from torch_nowcast import GaussianState, KalmanFilter, regional_kalman_filter
from torch_nowcast.models import flux_process_matrix

PAIR = torch.tensor([[0.0, 1.0], [1.0, 0.0]], dtype=torch.float64)
PATH_3 = torch.tensor([[0.0, 1.0, 0.0], [1.0, 0.0, 1.0], [0.0, 1.0, 0.0]], dtype=torch.float64)
PATH_4 = torch.tensor(
    [[0.0, 1.0, 0.0, 0.0], [1.0, 0.0, 1.0, 0.0], [0.0, 1.0, 0.0, 1.0], [0.0, 0.0, 1.0, 0.0]], dtype=torch.float64
)


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def _eye(dim: int) -> torch.Tensor:
    return torch.eye(dim, dtype=torch.float64)


def _is_psd_ordered(smaller: torch.Tensor, larger: torch.Tensor, atol=1e-9) -> bool:
    return torch.linalg.eigvalsh(larger - smaller).min().item() >= -atol


def test_predict_increase_uncertainty():
    kf = KalmanFilter(_eye(3), _eye(3), _spd_matrix(3), _spd_matrix(3))
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))

    predicted = kf.predict(s)

    assert torch.linalg.det(predicted.covariance) > torch.linalg.det(s.covariance)

    predicted_2 = kf.predict(predicted)

    assert torch.linalg.det(predicted_2.covariance) > torch.linalg.det(predicted.covariance)


def test_update_reduce_uncertainty():
    kf = KalmanFilter(_eye(3), torch.randn(2, 3, dtype=torch.float64), _spd_matrix(3), _spd_matrix(2))
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))
    measure = torch.randn(2, 1, dtype=torch.float64)

    updated = kf.update(s, measure)

    assert torch.linalg.det(updated.covariance) < torch.linalg.det(s.covariance)
    assert _is_psd_ordered(updated.covariance, s.covariance)

    updated_2 = kf.update(updated, measure)

    assert torch.linalg.det(updated_2.covariance) < torch.linalg.det(updated.covariance)


def test_update_is_order_independent():
    kf = KalmanFilter(_eye(4), torch.randn(2, 4, dtype=torch.float64), _spd_matrix(4), _spd_matrix(2))
    s = GaussianState(torch.randn(4, 1, dtype=torch.float64), _spd_matrix(4))
    measure = torch.randn(2, 1, dtype=torch.float64)
    measure_2 = torch.randn(2, 1, dtype=torch.float64)

    updated = kf.update(kf.update(s, measure), measure_2)
    updated_2 = kf.update(kf.update(s, measure_2), measure)

    assert torch.allclose(updated.mean, updated_2.mean)
    assert torch.allclose(updated.covariance, updated_2.covariance)


def test_several_predict_can_be_reduced_to_one():
    kf = KalmanFilter(torch.randn(3, 3, dtype=torch.float64), _eye(3), _spd_matrix(3), _spd_matrix(3))
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))

    predicted = kf.predict(kf.predict(s))
    predicted_2 = kf.predict(
        s,
        process_matrix=kf.process_matrix @ kf.process_matrix,
        process_noise=kf.process_matrix @ kf.process_noise @ kf.process_matrix.mT + kf.process_noise,
    )

    assert torch.allclose(predicted.mean, predicted_2.mean)
    assert torch.allclose(predicted.covariance, predicted_2.covariance)


def test_joseph_is_equivalent():
    kf = KalmanFilter(_eye(3), torch.randn(3, 3, dtype=torch.float64), _spd_matrix(3), _spd_matrix(3))
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))
    measure = torch.randn(3, 1, dtype=torch.float64)
    measure[1] = torch.nan

    updated = kf.update(s, measure)
    kf.joseph_update = True
    updated_joseph = kf.update(s, measure)

    assert torch.allclose(updated.mean, updated_joseph.mean)
    assert torch.allclose(updated.covariance, updated_joseph.covariance)


def test_covariances_stay_symmetric():
    kf = regional_kalman_filter(PATH_4, 0.5, 1.0, alpha=0.2, correlation=0.3)
    s = GaussianState(torch.zeros(4, 1, dtype=torch.float64), 10 * _eye(4))
    measures = torch.randn(20, 4, 1, dtype=torch.float64)
    measures[torch.rand(20, 4, 1) < 0.4] = torch.nan

    result = kf.filter(s, measures)

    assert torch.equal(result.forecasts.covariance, result.forecasts.covariance.mT)
    assert torch.equal(result.analyses.covariance, result.analyses.covariance.mT)
    assert torch.linalg.eigvalsh(result.analyses.covariance).min() >= 0


def test_analysis_never_increases_uncertainty():
    length = 20
    kf = regional_kalman_filter(PATH_4, 0.5, 1.0, alpha=0.2, correlation=0.3)
    s = GaussianState(torch.zeros(4, 1, dtype=torch.float64), 10 * _eye(4))
    measures = torch.randn(length, 4, 1, dtype=torch.float64)
    measures[torch.rand(length, 4, 1) < 0.4] = torch.nan

    result = kf.filter(s, measures)

    for t in range(length):
        assert _is_psd_ordered(result.analyses.covariance[t], result.forecasts.covariance[t])
        assert result.analyses[t].trace() <= result.forecasts[t].trace()


def test_forecast_uncertainty_is_non_decreasing():
    process_matrix = flux_process_matrix(PATH_4, alpha=0.2)
    kf = KalmanFilter(process_matrix, _eye(4), _spd_matrix(4), _eye(4))
    s = GaussianState(torch.randn(4, 1, dtype=torch.float64), torch.zeros(4, 4, dtype=torch.float64))

    traces = []
    for _ in range(10):
        s = kf.predict(s)
        traces.append(s.trace())

    assert all(traces[k + 1] >= traces[k] for k in range(len(traces) - 1))


def test_mean_converges_to_noise_free_measure():
    dim = 3
    kf = KalmanFilter(_eye(dim), _eye(dim), torch.zeros(dim, dim, dtype=torch.float64), 1e-10 * _eye(dim))
    s = GaussianState(torch.randn(dim, 1, dtype=torch.float64), _eye(dim))
    measure = torch.randn(dim, 1, dtype=torch.float64)

    result = kf.filter(s, measure[None].expand(5, dim, 1))

    assert torch.allclose(result.analyses.mean[0], measure, atol=1e-6)
    assert torch.allclose(result.last_analysis.mean, measure, atol=1e-8)


def test_filter_covariance_convergence():
    kf = regional_kalman_filter(PATH_3, 1.0, 0.5, alpha=0.1)
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))

    for _ in range(30):
        s = kf.predict(s)
        s = kf.update(s, torch.randn(3, 1, dtype=torch.float64))

    covariance = s.covariance

    s = kf.predict(s)
    s = kf.update(s, torch.randn(3, 1, dtype=torch.float64))

    assert torch.allclose(covariance, s.covariance)


def test_partially_observed_pair():
    # M = I, Q = R = I, prior N(0, 10 I), observe (1, missing)
    kf = regional_kalman_filter(PAIR, 1.0, 1.0)
    s = GaussianState(torch.zeros(2, 1, dtype=torch.float64), 10 * _eye(2))
    measures = torch.tensor([[[1.0], [torch.nan]]], dtype=torch.float64)

    result = kf.filter(s, measures)
    analysis = result.analyses[0]

    assert torch.allclose(analysis.mean, torch.tensor([[10 / 11], [0.0]], dtype=torch.float64))
    assert torch.allclose(analysis.covariance, torch.diag(torch.tensor([10 / 11, 10.0], dtype=torch.float64)))

    # Second signal is untouched
    assert analysis.mean[1, 0] == result.forecasts.mean[0, 1, 0]
    assert analysis.covariance[1, 1] == result.forecasts.covariance[0, 1, 1]

    assert torch.allclose(
        result.forecasts.covariance[1], torch.diag(torch.tensor([10 / 11 + 1, 11.0], dtype=torch.float64))
    )


def test_flux_pulls_regions_together():
    length = 10
    s = GaussianState(torch.tensor([[10.0], [0.0]], dtype=torch.float64), _eye(2))
    measures = torch.full((length, 2, 1), 5.0, dtype=torch.float64)

    independent = regional_kalman_filter(PAIR, 10.0, 0.1).filter(s, measures)
    coupled = regional_kalman_filter(PAIR, 10.0, 0.1, alpha=0.2).filter(s, measures)

    def gap(result, t):
        return (result.analyses.mean[t, 0, 0] - result.analyses.mean[t, 1, 0]).abs()

    # No forecast yet: same first analysis
    assert torch.allclose(gap(independent, 0), gap(coupled, 0))

    for t in range(1, length):
        assert gap(coupled, t) < gap(independent, t)


def test_horizon_uncertainty_strictly_increases():
    kf = regional_kalman_filter(PATH_3, 1.0, 1.0, alpha=0.1)
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), 10 * _eye(3))

    trajectory = kf.nowcast(s, torch.randn(3, 1, dtype=torch.float64), 16)
    traces = trajectory.states.trace()

    assert len(trajectory) == 17
    assert (traces[2:] > traces[1:-1]).all()
