# tests/conftest.py
"""Shared fixtures for the field sampling tests."""

from typing import Dict

import numpy as np
import pytest

from fieldsampling.core.domain import DomainGrid
from fieldsampling.core.gpmm import ComponentParams


def field(X: np.ndarray) -> np.ndarray:
    """Smooth synthetic field used across the tests."""
    return np.sin(X[:, 0]) + np.cos(0.5 * X[:, 1])


@pytest.fixture
def grid() -> DomainGrid:
    """5 x 5 grid over [0, 4] x [0, 4]."""
    return DomainGrid.from_bounds([[0, 4], [0, 4]], 1.0)


@pytest.fixture
def line_grid() -> DomainGrid:
    """Five points on the x axis."""
    return DomainGrid([[0, 0], [1, 0], [2, 0], [3, 0], [4, 0]])


@pytest.fixture
def samples():
    """Deterministic noisy samples of the synthetic field."""
    rng = np.random.default_rng(0)
    X = rng.uniform(0, 4, size=(30, 2))
    y = field(X) + rng.normal(scale=0.05, size=len(X))
    return X, y


@pytest.fixture
def components():
    return [ComponentParams(lengthscales=1.0, signal_variance=1.0, noise_variance=0.1),
            ComponentParams(lengthscales=[2.0, 2.0], signal_variance=0.5, noise_variance=0.2)]


@pytest.fixture
def config_dict() -> Dict:
    """Sample coordinator configuration mapping."""
    return {
        "domain": {"bounds": [[0, 4], [0, 4]], "resolution": 1.0},
        "model": {
            "components": [
                {"lengthscales": 1.0, "signal_variance": 1.0, "noise_variance": 0.1},
                {"lengthscales": 2.0, "signal_variance": 0.5, "noise_variance": 0.2},
            ],
            "max_iterations": 5,
            "eps": 1e-3,
        },
        "retrain_threshold": 3,
        "agents": {
            "jackal": {"id": 0},
            "pelican": {"id": 1, "heterogeneity": {"type": "SPEED", "speed_factor": 2.0}},
        },
        "sampling": {"mode": "variance", "ucb_coefficient": 1.0},
    }


@pytest.fixture
def initial_samples(samples) -> Dict:
    X, y = samples
    return {"locations": X[:10].tolist(), "values": y[:10].tolist()}
