import pytest
import torch

import torch_ekf


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture
def random_walk() -> torch_ekf.KalmanEngine:
    """1D random walk without process noise, observed with unit noise (float64)."""
    return torch_ekf.KalmanEngine(
        torch_ekf.LinearDynamicsModel(torch.ones(1, 1, dtype=torch.float64), torch.zeros(1, 1, dtype=torch.float64)),
        torch_ekf.LinearObservationModel(torch.ones(1, 1, dtype=torch.float64), torch.ones(1, 1, dtype=torch.float64)),
    )


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
