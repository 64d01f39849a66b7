"""Torch-EKF: Kalman filtering, extended Kalman filtering and RTS smoothing in PyTorch.

torch-ekf implements the Kalman filter recursion (predict / update), its extension to
nonlinear observation models linearized at each step (EKF), and the Rauch-Tung-Striebel
(RTS) backward smoother. The recursion is written once and is shared by every
observation model: only the way the model is linearized changes.

Key features
------------
- **Filtering and RTS smoothing**: forward pass returning both predicted and filtered
  estimates, then backward pass.
- **Linear or linearized observations**: Jacobians of nonlinear observation functions are
  computed with ``torch.func`` (or given explicitly).
- **Typed failures**: singular covariances raise catchable errors that report the failing
  step and the results that are still valid.
- **Any precision, any device**: everything follows the dtype/device of the tensors
  (``float32``, ``float64``, cpu, cuda). Leading batch dimensions broadcast, so that many
  independent runs can be processed at once.

Getting started
---------------
- :class:`~torch_ekf.StateEstimate` holds a mean (``state``) and a ``covariance``.
- :class:`~torch_ekf.LinearDynamicsModel` holds ``F`` and ``Q``.
- :class:`~torch_ekf.LinearObservationModel` and :class:`~torch_ekf.LinearizedObservationModel`
  implement the :class:`~torch_ekf.ObservationModel` interface.
- :class:`~torch_ekf.KalmanEngine` ties them together with :meth:`~torch_ekf.KalmanEngine.filter`
  and :meth:`~torch_ekf.KalmanEngine.smooth`.

Notes on shapes
---------------
torch-ekf uses column vectors. State and measurement vectors must have shape
``(..., dim, 1)``. Leading dimensions ``...`` are treated as batch dimensions.
"""

from .engine import FilterResult, KalmanEngine, filter, predict_step, project, smooth, update_step  # noqa: A004
from .errors import (
    DimensionMismatch,
    KalmanError,
    SingularCovarianceError,
    SingularInnovationCovariance,
    SingularPredictedCovariance,
)
from .models import (
    LinearDynamicsModel,
    Linearization,
    LinearizedObservationModel,
    LinearObservationModel,
    ObservationModel,
)
from .state import StateEstimate

__all__ = [
    "DimensionMismatch",
    "FilterResult",
    "KalmanEngine",
    "KalmanError",
    "LinearDynamicsModel",
    "LinearObservationModel",
    "Linearization",
    "LinearizedObservationModel",
    "ObservationModel",
    "SingularCovarianceError",
    "SingularInnovationCovariance",
    "SingularPredictedCovariance",
    "StateEstimate",
    "filter",
    "predict_step",
    "project",
    "smooth",
    "update_step",
]
__version__ = "0.1.0"
