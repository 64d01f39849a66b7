import importlib

import torch

import torch_ekf.models


def test_repr_is_fine_with_old_pytorch():
    # Mock printoptions
    old_printoptions = None
    if hasattr(torch._tensor_str, "printoptions"):
        old_printoptions = torch._tensor_str.printoptions
        delattr(torch._tensor_str, "printoptions")

    try:
        models = importlib.reload(torch_ekf.models)
        dynamics = models.LinearDynamicsModel(torch.tensor([[1.0, 1.0], [0.0, 1.0]]), torch.eye(2) * 0.01)
        observation = models.LinearObservationModel(torch.tensor([[1.0, 0.0]]), torch.eye(1) * 0.1)

        dynamics_repr = repr(dynamics)
        observation_repr = repr(observation)
    finally:
        if old_printoptions is not None:  # RESET as other tests depend on it.
            torch._tensor_str.printoptions = old_printoptions
        importlib.reload(torch_ekf.models)

    assert len(dynamics_repr.split("\n")) == 2
    assert dynamics_repr.split("\n", maxsplit=1)[0] == "Process: F = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00],"
    assert observation_repr == "Measurement: H = tensor([[1., 0.]])  &  R = tensor([[0.10]])"
