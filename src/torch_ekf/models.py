"""Dynamics and observation models.

The filtering recursion only relies on two kinds of models:

- :class:`LinearDynamicsModel`: x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
- :class:`ObservationModel`: z_k = h(x_k) + v_k,   v_k ~ N(0, R)

An observation model is anything able to *linearize* itself around a state: it provides
the Jacobian H of h at that state, the noise covariance R and h itself. For a linear
model (:class:`LinearObservationModel`) the linearization is constant and h(x) = H x.
For a nonlinear one (:class:`LinearizedObservationModel`), H is recomputed at each step,
which yields the extended Kalman filter (EKF).
"""

from __future__ import annotations

import abc
import contextlib
import copy
import dataclasses
from typing import Callable, Union, overload

import torch

from .errors import DimensionMismatch
from .state import StateEstimate

ColumnFunction = Callable[[torch.Tensor], torch.Tensor]
NoiseLike = Union[torch.Tensor, ColumnFunction]


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


_REPR_SPLIT_LENGTH = 110


def format_pair(title: str, first: tuple[str, torch.Tensor], second: tuple[str, torch.Tensor]) -> str:
    """Format two named matrices side by side (or one above the other if too wide).

    Example:
        Process: F = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00],
                             [0., 1.]])              [0.00, 0.01]])
    """
    with printoptions(profile="short", sci_mode=False, linewidth=80):
        first_lines = str(first[1]).split("\n")
        second_lines = str(second[1]).split("\n")

    prefix = f"{title}: {first[0]} = "
    indent = " " * len(prefix)
    width = max(len(line) for line in first_lines)

    if width + max(len(line) for line in second_lines) <= _REPR_SPLIT_LENGTH:
        separator = f"  &  {second[0]} = "
        blank = " " * len(separator)
        lines = []
        for i, line in enumerate(first_lines):
            right = second_lines[i] if i < len(second_lines) else ""
            lines.append(
                (prefix if i == 0 else indent) + line.ljust(width) + (separator if i == 0 else blank) + right
            )
        return "\n".join(line.rstrip() for line in lines)

    second_prefix = " " * (len(prefix) - len(f"{second[0]} = ")) + f"{second[0]} = "
    lines = [(prefix if i == 0 else indent) + line for i, line in enumerate(first_lines)]
    lines.append("")
    lines += [(second_prefix if i == 0 else indent) + line for i, line in enumerate(second_lines)]
    return "\n".join(lines)


@dataclasses.dataclass(frozen=True)
class LinearDynamicsModel:
    """Linear process model with additive Gaussian noise.

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)

    Batch dimensions are supported (several models at once) as long as they broadcast
    with the estimates.

    Attributes:
        transition (torch.Tensor): Transition (process) matrix ``F``.
            Shape: ``(..., dim_x, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(..., dim_x, dim_x)``
    """

    transition: torch.Tensor
    process_noise: torch.Tensor

    def __post_init__(self) -> None:
        if self.transition.ndim < 2 or self.transition.shape[-1] != self.transition.shape[-2]:  # noqa: PLR2004
            raise DimensionMismatch(f"Transition matrix F should be square, got {tuple(self.transition.shape)}")
        DimensionMismatch.check("Process noise Q", self.process_noise, (self.state_dim, self.state_dim))

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.transition.shape[-1]

    @property
    def device(self) -> torch.device:
        return self.transition.device

    @property
    def dtype(self) -> torch.dtype:
        return self.transition.dtype

    @overload
    def to(self, dtype: torch.dtype) -> LinearDynamicsModel: ...

    @overload
    def to(self, device: torch.device) -> LinearDynamicsModel: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype."""
        return LinearDynamicsModel(self.transition.to(fmt), self.process_noise.to(fmt))

    def predict(self, estimate: StateEstimate) -> StateEstimate:
        """Propagate an estimate one step forward.

            x' = F x
            P' = F P Fᵀ + Q

        Args:
            estimate (StateEstimate): Estimate at time k-1.

        Returns:
            StateEstimate: Predicted (prior) estimate at time k.
        """
        state = self.transition @ estimate.state
        covariance = self.transition @ estimate.covariance @ self.transition.mT + self.process_noise
        return StateEstimate(state, covariance)

    def __repr__(self) -> str:
        return format_pair("Process", ("F", self.transition), ("Q", self.process_noise))


@dataclasses.dataclass(frozen=True)
class Linearization:
    """Observation model linearized around a given state.

    Attributes:
        jacobian (torch.Tensor): Measurement matrix ``H`` (Jacobian of h at the linearization point).
            Shape: ``(..., dim_z, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
            Shape: ``(..., dim_z, dim_z)``
        observe (Callable[[torch.Tensor], torch.Tensor]): The observation function h.
            It is evaluated exactly at its argument, only its slope is linearized.
    """

    jacobian: torch.Tensor
    measurement_noise: torch.Tensor
    observe: ColumnFunction

    @property
    def jacobian_transpose(self) -> torch.Tensor:
        """Transposed Jacobian ``Hᵀ``. Shape: ``(..., dim_x, dim_z)``."""
        return self.jacobian.mT


class ObservationModel(abc.ABC):
    """Interface of observation models.

    Implementations provide the Jacobian of the observation function at any state,
    the observation function itself and the measurement noise covariance. The filter
    only calls :meth:`linearize`.
    """

    @property
    @abc.abstractmethod
    def state_dim(self) -> int:
        """Dimension of the state variable."""

    @property
    @abc.abstractmethod
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""

    @abc.abstractmethod
    def jacobian_at(self, state: torch.Tensor) -> torch.Tensor:
        """Jacobian ``H`` of the observation function at ``state`` (shape ``(..., dim_z, dim_x)``)."""

    @abc.abstractmethod
    def observe(self, state: torch.Tensor) -> torch.Tensor:
        """Predicted observation of ``state`` (shape ``(..., dim_z, 1)``)."""

    @abc.abstractmethod
    def noise_covariance(self, state: torch.Tensor) -> torch.Tensor:
        """Measurement noise covariance ``R`` at ``state`` (shape ``(..., dim_z, dim_z)``)."""

    @abc.abstractmethod
    def to(self, fmt) -> ObservationModel:
        """Convert the model to a specific device or dtype."""

    def linearize(self, state: torch.Tensor) -> Linearization:
        """Linearize the model around ``state``.

        Args:
            state (torch.Tensor): Linearization point.
                Shape: ``(..., dim_x, 1)``

        Returns:
            Linearization: H, Hᵀ, R and the observation function.

        Raises:
            DimensionMismatch: If the point, H or R have unexpected shapes.
        """
        DimensionMismatch.check("Linearization point", state, (self.state_dim, 1))
        jacobian = self.jacobian_at(state)
        noise = self.noise_covariance(state)
        DimensionMismatch.check("Measurement matrix H", jacobian, (self.measure_dim, self.state_dim))
        DimensionMismatch.check("Measurement noise R", noise, (self.measure_dim, self.measure_dim))
        return Linearization(jacobian, noise, self.observe)


class LinearObservationModel(ObservationModel):
    """Linear observation model z = H x + v,  v ~ N(0, R).

    The linearization point is ignored: H and R are constant.

    Attributes:
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``.
            Shape: ``(..., dim_z, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
            Shape: ``(..., dim_z, dim_z)``
    """

    def __init__(self, measurement_matrix: torch.Tensor, measurement_noise: torch.Tensor) -> None:
        if measurement_matrix.ndim < 2:  # noqa: PLR2004
            raise DimensionMismatch(
                f"Measurement matrix H should have shape (..., dim_z, dim_x), got {tuple(measurement_matrix.shape)}"
            )
        self.measurement_matrix = measurement_matrix
        self.measurement_noise = measurement_noise
        DimensionMismatch.check("Measurement noise R", measurement_noise, (self.measure_dim, self.measure_dim))

    @property
    def state_dim(self) -> int:
        return self.measurement_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        return self.measurement_matrix.shape[-2]

    def jacobian_at(self, state: torch.Tensor) -> torch.Tensor:  # noqa: ARG002
        return self.measurement_matrix

    def observe(self, state: torch.Tensor) -> torch.Tensor:
        return self.measurement_matrix @ state

    def noise_covariance(self, state: torch.Tensor) -> torch.Tensor:  # noqa: ARG002
        return self.measurement_noise

    def to(self, fmt) -> LinearObservationModel:
        return LinearObservationModel(self.measurement_matrix.to(fmt), self.measurement_noise.to(fmt))

    def __repr__(self) -> str:
        return format_pair("Measurement", ("H", self.measurement_matrix), ("R", self.measurement_noise))


class LinearizedObservationModel(ObservationModel):
    """Nonlinear observation model z = h(x) + v,  v ~ N(0, R), linearized on demand (EKF).

    ``h`` is written for a single column state of shape ``(dim_x, 1)`` and returns a
    column of shape ``(dim_z, 1)``. The same goes for an explicit ``jacobian`` (returning
    ``(dim_z, dim_x)``) and for a callable ``noise`` (returning ``(dim_z, dim_z)``). Batched
    states are handled with ``torch.func.vmap``, therefore these functions must be made of
    (functional) torch operations.

    Unless an explicit ``jacobian`` is given, the Jacobian of ``h`` is computed by automatic
    differentiation with ``torch.func.jacrev``.

    Example:
    ```python
        # Range and bearing of a 2D constant velocity target (x, y, vx, vy)
        def range_bearing(x):
            return torch.stack([x[:2, 0].norm(), torch.atan2(x[1, 0], x[0, 0])])[:, None]

        model = LinearizedObservationModel(range_bearing, 4, 2, torch.diag(torch.tensor([0.1, 0.01])))
        model.jacobian_at(torch.tensor([[3.0], [4.0], [0.0], [0.0]]))  # Shape: (2, 4)
    ```

    Attributes:
        function (Callable[[torch.Tensor], torch.Tensor]): Observation function ``h``.
        noise (torch.Tensor | Callable[[torch.Tensor], torch.Tensor]): Measurement noise covariance ``R``
            or a function of a single column linearization point returning it.
            Shape: ``(..., dim_z, dim_z)``
        jacobian (Callable[[torch.Tensor], torch.Tensor] | None): Optional explicit Jacobian of ``h``
            (for a single column state). Default: automatic differentiation.
    """

    def __init__(
        self,
        function: ColumnFunction,
        state_dim: int,
        measure_dim: int,
        noise: NoiseLike,
        *,
        jacobian: ColumnFunction | None = None,
    ) -> None:
        self.function = function
        self._state_dim = state_dim
        self._measure_dim = measure_dim
        self.noise = noise
        self.jacobian = jacobian
        if isinstance(noise, torch.Tensor):
            DimensionMismatch.check("Measurement noise R", noise, (measure_dim, measure_dim))

    @property
    def state_dim(self) -> int:
        return self._state_dim

    @property
    def measure_dim(self) -> int:
        return self._measure_dim

    def _per_column(self, function: ColumnFunction, state: torch.Tensor) -> torch.Tensor:
        """Apply a single-column function on a (possibly batched) state."""
        batch = state.shape[:-2]
        if not batch:
            return function(state)

        output = torch.func.vmap(function)(state.reshape(-1, *state.shape[-2:]))
        return output.reshape(*batch, *output.shape[1:])

    def _autograd_jacobian(self, state: torch.Tensor) -> torch.Tensor:
        # jacrev on (dim_x, 1) -> (dim_z, 1) yields a (dim_z, 1, dim_x, 1) jacobian
        return torch.func.jacrev(self.function)(state)[:, 0, :, 0]

    def jacobian_at(self, state: torch.Tensor) -> torch.Tensor:
        return self._per_column(self._autograd_jacobian if self.jacobian is None else self.jacobian, state)

    def observe(self, state: torch.Tensor) -> torch.Tensor:
        return self._per_column(self.function, state)

    def noise_covariance(self, state: torch.Tensor) -> torch.Tensor:
        if isinstance(self.noise, torch.Tensor):
            return self.noise
        return self._per_column(self.noise, state)

    def to(self, fmt) -> LinearizedObservationModel:
        """Convert the noise covariance (when it is a tensor) to a specific device or dtype.

        The functions are left untouched: they are expected to follow the state format.
        """
        return LinearizedObservationModel(
            self.function,
            self.state_dim,
            self.measure_dim,
            self.noise.to(fmt) if isinstance(self.noise, torch.Tensor) else self.noise,
            jacobian=self.jacobian,
        )

    def __repr__(self) -> str:
        name = getattr(self.function, "__name__", type(self.function).__name__)
        jacobian = "autograd" if self.jacobian is None else getattr(self.jacobian, "__name__", "explicit")
        header = f"Measurement: h = {name} (linearized, jacobian: {jacobian})"
        if isinstance(self.noise, torch.Tensor):
            with printoptions(profile="short", sci_mode=False, linewidth=100):
                noise = str(self.noise).split("\n")
            indent = " " * len("             R = ")
            return "\n".join(
                [header, "             R = " + noise[0], *(indent + line for line in noise[1:])]
            )
        return header + f"\n             R = {getattr(self.noise, '__name__', 'callable')}(x)"
