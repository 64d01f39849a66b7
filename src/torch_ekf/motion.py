"""Constant-derivative motion models.

The state holds, for each of ``dim`` independent spatial dimensions, a value and its
derivatives up to ``order`` (position, velocity, acceleration, ...). Only values are
measured. The transition comes from the Taylor expansion of the motion, and the process
noise follows one of two classical assumptions:

- the order-th derivative is constant over a time step, up to an additive Gaussian noise;
- the (order+1)-th derivative is a zero-mean white Gaussian noise (``expected_model``).
"""

from __future__ import annotations

import math

import torch

from .models import LinearDynamicsModel, LinearObservationModel


def interleave(x: torch.Tensor, size: int) -> torch.Tensor:
    """Interleave a tensor along its first dimension.

    Rows are grouped in consecutive blocks of ``size`` and the i-th rows of every block
    are gathered together. With ``size = 3``, rows ``0 1 2 3 4 5 6 7 8`` become
    ``0 3 6 1 4 7 2 5 8``.

    Example:
        >>> interleave(torch.arange(6), 2)
        tensor([0, 2, 4, 1, 3, 5])

    Args:
        x (torch.Tensor): Tensor to interleave.
            Shape: ``(B, ...)`` with ``B`` a multiple of ``size``.
        size (int): Block size.

    Returns:
        torch.Tensor: Interleaved tensor.
            Shape: ``(B, ...)``
    """
    rest = x.shape[1:]
    return x.reshape(-1, size, *rest).transpose(0, 1).reshape(-1, *rest)


def _taylor_coefficients(order: int, dt: float) -> torch.Tensor:
    """dt^k / k! for k in 0..order."""
    return torch.tensor([dt**k / math.factorial(k) for k in range(order + 1)])


def taylor_transition(order: int, dt=1.0) -> torch.Tensor:
    r"""Transition matrix ``F`` of a single dimension with derivatives up to ``order``.

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example (constant acceleration, dt = 0.5)::

        [[1.0, 0.5, 0.125],
         [0.0, 1.0, 0.5  ],
         [0.0, 0.0, 1.0  ]]

    Args:
        order (int): Highest derivative order in the state.
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Transition matrix.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order, dt)
    transition = torch.zeros(order + 1, order + 1)
    for k in range(order + 1):
        transition += torch.diag(coefficients[k].expand(order + 1 - k), k)
    return transition


def taylor_process_noise(process_std: float, order: int, dt=1.0, expected_model=False) -> torch.Tensor:
    """Process noise covariance ``Q`` of a single dimension with derivatives up to ``order``.

    The noise w enters the state through a column g, such that Q = std² g gᵀ:

    - constant order-th derivative: the noise w on the order-th derivative propagates to
      the (order - i)-th derivative as dt^i / i! w.
    - expected model: the (order+1)-th derivative is w, it contributes dt^(i+1) / (i+1)! w
      to the (order - i)-th derivative.

    Args:
        process_std (float): Process noise standard deviation.
        order (int): Highest derivative order in the state.
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative model.
            Default: False

    Returns:
        torch.Tensor: Symmetric positive semi-definite covariance of rank 1.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order + 1, dt)
    column = coefficients[1:] if expected_model else coefficients[:-1]
    column = column.flip(0)[:, None]  # The highest derivative is the last in the state
    return process_std**2 * column @ column.mT


def constant_derivative_models(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    expected_model=False,
    order_by_dim=False,
) -> tuple[LinearDynamicsModel, LinearObservationModel]:
    """Build constant position/velocity/acceleration/... models.

    The state dimension is ``(order + 1) * dim``, and the measure dimension is ``dim``
    (values only, with independent noises).

    Example:
    ```python
        dynamics, observation = constant_derivative_models(3.0, 1.5, dim=2, order=1)
        engine = KalmanEngine(dynamics, observation)  # Constant velocity in 2D
    ```

    Args:
        measurement_std (float | torch.Tensor): Measurement noise standard deviation.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Process noise standard deviation (see `taylor_process_noise`).
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent spatial dimensions.
            Default: 2
        order (int): Highest derivative order in the state.
            Default: 1 (constant velocity)
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative noise model.
            Default: False
        order_by_dim (bool): State layout.
            - True: grouped by dimension (``x, x', y, y'``)
            - False: grouped by derivative order (``x, y, x', y'``)
            Default: False

    Returns:
        LinearDynamicsModel: Transition and process noise.
        LinearObservationModel: Measurement matrix and noise.
    """
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=torch.float32), (dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float32), (dim,))
    state_dim = (order + 1) * dim

    transition = torch.block_diag(*(taylor_transition(order, dt) for _ in range(dim)))
    process_noise = torch.block_diag(
        *(taylor_process_noise(process_std[i].item(), order, dt, expected_model) for i in range(dim))
    )

    # Values are the first of each (order + 1) block
    measurement_matrix = torch.zeros(dim, state_dim)
    measurement_matrix[torch.arange(dim), torch.arange(dim) * (order + 1)] = 1.0
    measurement_noise = torch.diag(measurement_std**2)

    if not order_by_dim:  # Regroup rows (and columns) by derivative order
        transition = interleave(interleave(transition, order + 1).mT, order + 1).mT
        process_noise = interleave(interleave(process_noise, order + 1).mT, order + 1).mT
        measurement_matrix = interleave(measurement_matrix.mT, order + 1).mT

    return (
        LinearDynamicsModel(transition.contiguous(), process_noise.contiguous()),
        LinearObservationModel(measurement_matrix.contiguous(), measurement_noise.contiguous()),
    )
