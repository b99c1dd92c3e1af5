"""Configuration of an operational nowcasting setup.

A configuration gathers the filter options, the coefficients of the regional model and the operational
parameters. It is saved/loaded as JSON so that a live system can rebuild the same filter at each run.
The adjacency between regions is data, not configuration: it is given to `NowcastConfig.build`.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path

import torch

from .kalman_filter import SINGULAR_POLICIES, KalmanFilter
from .models import regional_kalman_filter

DTYPES = {"float32": torch.float32, "float64": torch.float64}


@dataclass
class FilterConfig:
    """Numerical options of the Kalman filter."""

    joseph_update: bool = False
    on_singular: str = "raise"
    enforce_psd: bool = True
    psd_tolerance: float = 1e-6
    dtype: str = "float64"

    def __post_init__(self) -> None:
        if self.on_singular not in SINGULAR_POLICIES:
            raise ValueError(f"on_singular should be one of {SINGULAR_POLICIES}. Found {self.on_singular!r}")
        if self.dtype not in DTYPES:
            raise ValueError(f"dtype should be one of {tuple(DTYPES)}. Found {self.dtype!r}")


@dataclass
class ModelConfig:
    """Coefficients of the regional model (estimated offline)."""

    alpha: float = 0.0  # Flux between adjacent regions
    decay: float = 1.0
    process_std: float = 1.0
    measurement_std: float = 1.0
    correlation: float = 0.0  # Process noise correlation between regions
    correlate_neighbours_only: bool = False


@dataclass
class OperationalConfig:
    """Parameters of the operational update."""

    horizon: int = 16
    update_first: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.horizon, bool) or not isinstance(self.horizon, int) or self.horizon < 0:
            raise ValueError(f"horizon should be a non-negative integer. Found {self.horizon!r}")


@dataclass
class NowcastConfig:
    """Complete nowcasting configuration."""

    filter: FilterConfig = field(default_factory=FilterConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    operational: OperationalConfig = field(default_factory=OperationalConfig)

    def save(self, path: str | Path) -> None:
        """Save config to JSON file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls, path: str | Path) -> NowcastConfig:
        """Load config from JSON file. Missing sections/fields take their default values."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> NowcastConfig:
        return cls(
            filter=FilterConfig(**data.get("filter", {})),
            model=ModelConfig(**data.get("model", {})),
            operational=OperationalConfig(**data.get("operational", {})),
        )

    @classmethod
    def default(cls) -> NowcastConfig:
        """Create default configuration."""
        return cls()

    @property
    def dtype(self) -> torch.dtype:
        return DTYPES[self.filter.dtype]

    def build(self, adjacency: torch.Tensor) -> KalmanFilter:
        """Build the Kalman filter described by this configuration for the given regions.

        Args:
            adjacency (torch.Tensor): Symmetric adjacency matrix between regions.
                Shape: ``(n, n)``

        Returns:
            KalmanFilter: The configured filter (in the configured dtype).
        """
        kf = regional_kalman_filter(
            torch.as_tensor(adjacency).to(self.dtype),
            self.model.measurement_std,
            self.model.process_std,
            alpha=self.model.alpha,
            decay=self.model.decay,
            correlation=self.model.correlation,
            correlate_neighbours_only=self.model.correlate_neighbours_only,
            joseph_update=self.filter.joseph_update,
            on_singular=self.filter.on_singular,
            enforce_psd=self.filter.enforce_psd,
            psd_tolerance=self.filter.psd_tolerance,
        )
        return kf.to(self.dtype)
