import json

import pytest
import torch

from torch_nowcast import KalmanFilter, NowcastConfig
from torch_nowcast.config import FilterConfig, ModelConfig, OperationalConfig
from torch_nowcast.models import flux_process_matrix

PATH_3 = torch.tensor([[0.0, 1.0, 0.0], [1.0, 0.0, 1.0], [0.0, 1.0, 0.0]])


def test_default():
    config = NowcastConfig.default()

    assert config.operational.horizon == 16
    assert config.operational.update_first
    assert config.filter.on_singular == "raise"
    assert config.dtype == torch.float64


def test_save_load(tmp_path):
    config = NowcastConfig(
        filter=FilterConfig(joseph_update=True, on_singular="skip"),
        model=ModelConfig(alpha=0.2, process_std=0.5, correlation=0.1),
        operational=OperationalConfig(horizon=7),
    )
    path = tmp_path / "config" / "nowcast.json"

    config.save(path)

    assert json.loads(path.read_text())["model"]["alpha"] == 0.2
    assert NowcastConfig.load(path) == config


def test_from_dict_uses_defaults():
    config = NowcastConfig.from_dict({"operational": {"horizon": 4}})

    assert config.operational.horizon == 4
    assert config.model == ModelConfig()
    assert config.filter == FilterConfig()


@pytest.mark.parametrize(
    "data",
    [
        {"filter": {"on_singular": "ignore"}},
        {"filter": {"dtype": "int64"}},
        {"operational": {"horizon": -1}},
        {"operational": {"horizon": 1.5}},
    ],
)
def test_invalid_values(data):
    with pytest.raises(ValueError):
        NowcastConfig.from_dict(data)


def test_unknown_field():
    with pytest.raises(TypeError):
        NowcastConfig.from_dict({"model": {"beta": 1.0}})


def test_build():
    config = NowcastConfig.from_dict(
        {"model": {"alpha": 0.1, "measurement_std": 2.0}, "filter": {"on_singular": "pinv"}}
    )

    kf = config.build(PATH_3)

    assert isinstance(kf, KalmanFilter)
    assert kf.dtype == torch.float64
    assert kf.on_singular == "pinv"
    assert torch.allclose(kf.process_matrix, flux_process_matrix(PATH_3.double(), 0.1))
    assert torch.allclose(kf.measurement_noise, 4 * torch.eye(3, dtype=torch.float64))


def test_build_float32():
    kf = NowcastConfig.from_dict({"filter": {"dtype": "float32"}}).build(PATH_3)

    assert kf.dtype == torch.float32
    assert kf.measurement_noise.dtype == torch.float32
