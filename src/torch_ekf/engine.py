"""Kalman filtering and RTS smoothing.

The recursion is written once as plain functions (:func:`predict_step`, :func:`update_step`,
:func:`filter`, :func:`smooth`) that work with any :class:`~torch_ekf.models.ObservationModel`:
a linear one gives the classic Kalman filter, a linearized one gives the extended Kalman filter.
:class:`KalmanEngine` bundles a dynamics model, an observation model and the numerical options.

Note on inverses:
Innovation and predicted covariances are explicitly inverted (with `torch.linalg.inv_ex`),
as dimensions are usually small. An inversion fails when the LU factorization fails or when the
condition number exceeds ``max_condition`` (default: 1 / eps of the dtype).
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Sequence, Type, overload

import torch
import torch.linalg

from .errors import (
    DimensionMismatch,
    KalmanError,
    SingularCovarianceError,
    SingularInnovationCovariance,
    SingularPredictedCovariance,
)
from .models import LinearDynamicsModel, Linearization, ObservationModel
from .state import StateEstimate

logger = logging.getLogger(__name__)


class FilterResult(NamedTuple):
    """Output of :func:`filter`.

    Attributes:
        filtered (list[StateEstimate]): Posterior estimates. ``filtered[k]`` accounts for observations 0 to k.
            Length: T
        predicted (list[StateEstimate]): Prior estimates. ``predicted[0]`` is the initial prior and
            ``predicted[k]`` accounts for observations 0 to k-1.
            Length: T + 1
        log_likelihood (torch.Tensor): Log-likelihood of the observed sequence (sum of the innovation
            log-likelihoods, skipping missing observations).
            Shape: batch shape of the estimates
    """

    filtered: list[StateEstimate]
    predicted: list[StateEstimate]
    log_likelihood: torch.Tensor


def invert(
    matrix: torch.Tensor, error: Type[SingularCovarianceError], max_condition: float | None = None
) -> torch.Tensor:
    """Invert a (batch of) covariance matrix.

    Args:
        matrix (torch.Tensor): Matrix to invert.
            Shape: ``(..., dim, dim)``
        error (Type[SingularCovarianceError]): Error raised on failure.
        max_condition (float | None): Largest accepted condition number.
            Default: 1 / eps of the matrix dtype.

    Returns:
        torch.Tensor: The inverse.
            Shape: ``(..., dim, dim)``

    Raises:
        SingularCovarianceError: (The given subclass) if any matrix of the batch is singular
            or too badly conditioned.
    """
    if max_condition is None:
        max_condition = 1 / torch.finfo(matrix.dtype).eps

    inverse, info = torch.linalg.inv_ex(matrix)
    condition = torch.linalg.cond(matrix)
    if (info != 0).any() or not torch.isfinite(condition).all() or (condition > max_condition).any():
        raise error(matrix, condition)

    return inverse


def predict_step(estimate: StateEstimate, dynamics: LinearDynamicsModel) -> StateEstimate:
    """Compute the predicted (prior) estimate on the next time step.

        x' = F x
        P' = F P Fᵀ + Q

    Args:
        estimate (StateEstimate): Current estimate at time k-1.
            Shape (state): ``(..., dim_x, 1)``
            Shape (covariance): ``(..., dim_x, dim_x)``
        dynamics (LinearDynamicsModel): Process model.

    Returns:
        StateEstimate: Predicted estimate at time k.

    Raises:
        DimensionMismatch: If the estimate does not match the model dimension.
    """
    _check_estimate(estimate, dynamics.state_dim)
    return dynamics.predict(estimate)


def project(
    estimate: StateEstimate,
    observation: ObservationModel,
    *,
    linearization: Linearization | None = None,
) -> StateEstimate:
    """Project an estimate into the measurement space.

    It gives the expected distribution of the next observation z ~ N(y, S):

        y = h(x)
        S = H P Hᵀ + R

    Args:
        estimate (StateEstimate): Current estimate (usually predicted).
        observation (ObservationModel): Observation model.
        linearization (Linearization | None): Precomputed linearization of the model.
            Default: linearize the model at ``estimate.state``.

    Returns:
        StateEstimate: Expected observation distribution.
            Shape (state): ``(..., dim_z, 1)``
            Shape (covariance): ``(..., dim_z, dim_z)``
    """
    _check_estimate(estimate, observation.state_dim)
    if linearization is None:
        linearization = observation.linearize(estimate.state)

    jacobian = linearization.jacobian
    covariance = jacobian @ estimate.covariance @ linearization.jacobian_transpose + linearization.measurement_noise
    return StateEstimate(linearization.observe(estimate.state), covariance)


def update_step(
    estimate: StateEstimate,
    measure: torch.Tensor,
    observation: ObservationModel,
    *,
    joseph_update=False,
    max_condition: float | None = None,
) -> StateEstimate:
    """Update an estimate with a new observation.

    The observation model is linearized at ``estimate.state``. Then:

        S = H P Hᵀ + R
        K = P Hᵀ S^{-1}
        x' = x + K (z - h(x))
        P' = (I - K H) P   OR [JOSEPH_UPDATE] P' = (I - K H) P (I - K H)ᵀ + K R Kᵀ

    Missing observations (any NaN component) leave the matching estimates unchanged. When
    every observation of the batch is missing, the model is not even linearized (and S is
    not inverted).

    Args:
        estimate (StateEstimate): Predicted estimate.
            Shape (state): ``(..., dim_x, 1)``
            Shape (covariance): ``(..., dim_x, dim_x)``
        measure (torch.Tensor): Observation z (column vector).
            Shape: ``(..., dim_z, 1)``
        observation (ObservationModel): Observation model.
        joseph_update (bool): Use the Joseph form covariance update (more stable, slower).
            Default: False
        max_condition (float | None): Largest accepted condition number of S.
            Default: 1 / eps of the dtype.

    Returns:
        StateEstimate: Posterior estimate.

    Raises:
        DimensionMismatch: If shapes do not match the model dimensions.
        SingularInnovationCovariance: If S cannot be inverted.
    """
    return _update(estimate, measure, observation, joseph_update=joseph_update, max_condition=max_condition)[0]


def _update(
    estimate: StateEstimate,
    measure: torch.Tensor,
    observation: ObservationModel,
    *,
    joseph_update: bool,
    max_condition: float | None,
) -> tuple[StateEstimate, torch.Tensor]:
    """Update step that also returns the innovation log-likelihood (0 for missing observations)."""
    DimensionMismatch.check("Observation", measure, (observation.measure_dim, 1))
    missing = torch.isnan(measure).any(dim=-2, keepdim=True)  # Shape: (..., 1, 1)
    if missing.all():  # Nothing to update: S is neither computed nor inverted
        _check_estimate(estimate, observation.state_dim)
        batch = torch.broadcast_shapes(estimate.batch_shape, missing.shape[:-2])
        return estimate, torch.zeros(batch, dtype=estimate.covariance.dtype, device=estimate.covariance.device)

    linearization = observation.linearize(estimate.state)
    projection = project(estimate, observation, linearization=linearization)
    measure = torch.nan_to_num(measure, nan=0.0)

    precision = invert(projection.covariance, SingularInnovationCovariance, max_condition)
    kalman_gain = estimate.covariance @ linearization.jacobian_transpose @ precision

    state = estimate.state + kalman_gain @ (measure - projection.state)

    if joseph_update:
        identity = torch.eye(estimate.dim, dtype=estimate.covariance.dtype, device=estimate.covariance.device)
        factor = identity - kalman_gain @ linearization.jacobian
        covariance = (
            factor @ estimate.covariance @ factor.mT
            + kalman_gain @ linearization.measurement_noise @ kalman_gain.mT
        )
    else:
        covariance = estimate.covariance - kalman_gain @ linearization.jacobian @ estimate.covariance

    log_likelihood = StateEstimate(projection.state, projection.covariance).log_likelihood(measure)

    if missing.any():
        state = torch.where(missing, estimate.state, state)
        covariance = torch.where(missing, estimate.covariance, covariance)
        log_likelihood = torch.where(missing[..., 0, 0], torch.zeros_like(log_likelihood), log_likelihood)

    return StateEstimate(state, covariance), log_likelihood


def filter(  # noqa: A001
    prior: StateEstimate,
    dynamics: LinearDynamicsModel,
    observation: ObservationModel,
    measures: Sequence[torch.Tensor] | torch.Tensor,
    *,
    joseph_update=False,
    max_condition: float | None = None,
) -> FilterResult:
    """Run the forward (predict/update) recursion over a sequence of observations.

    predicted[0] = prior, then for each k:
        filtered[k] = update(predicted[k], z_k)   (model linearized at predicted[k].state)
        predicted[k + 1] = predict(filtered[k])

    Args:
        prior (StateEstimate): Prior on the state before any observation.
            Shape (state): ``(..., dim_x, 1)``
            Shape (covariance): ``(..., dim_x, dim_x)``
        dynamics (LinearDynamicsModel): Process model.
        observation (ObservationModel): Observation model (linear or linearized).
        measures (Sequence[torch.Tensor] | torch.Tensor): Observations in time order.
            Shape: ``(T, ..., dim_z, 1)``
        joseph_update (bool): Use the Joseph form covariance update.
            Default: False
        max_condition (float | None): Largest accepted condition number of innovation covariances.
            Default: 1 / eps of the dtype.

    Returns:
        FilterResult: filtered (length T) and predicted (length T + 1) estimates, and the log-likelihood.

    Raises:
        DimensionMismatch: If shapes do not match the model dimensions.
        SingularInnovationCovariance: If an update fails. The error holds the failing ``step`` and the
            valid ``partial`` results (a FilterResult with the estimates computed before that step).
    """
    _check_models(dynamics, observation)
    _check_estimate(prior, dynamics.state_dim)
    logger.debug(
        "Filtering %d observations (state dimension: %d, measure dimension: %d)",
        len(measures),
        dynamics.state_dim,
        observation.measure_dim,
    )

    predicted = [prior.clone()]
    filtered: list[StateEstimate] = []
    log_likelihood = torch.zeros(prior.batch_shape, dtype=prior.covariance.dtype, device=prior.covariance.device)

    for k, measure in enumerate(measures):
        # Convert on the fly to avoid storing all the measures on the device
        measure = measure.to(dtype=prior.state.dtype, device=prior.state.device)  # noqa: PLW2901

        try:
            estimate, step_likelihood = _update(
                predicted[k], measure, observation, joseph_update=joseph_update, max_condition=max_condition
            )
        except KalmanError as error:
            logger.debug("Filtering failed at step %d: %s", k, error.message)
            raise error.at_step(k, FilterResult(filtered, predicted, log_likelihood)) from None

        if torch.isnan(measure).any():
            logger.debug("Missing observation at step %d: update skipped", k)

        log_likelihood = log_likelihood + step_likelihood
        filtered.append(estimate)
        predicted.append(dynamics.predict(estimate))

    return FilterResult(filtered, predicted, log_likelihood)


def smooth(
    filtered: Sequence[StateEstimate],
    predicted: Sequence[StateEstimate],
    dynamics: LinearDynamicsModel,
    *,
    max_condition: float | None = None,
) -> list[StateEstimate]:
    """Apply Rauch-Tung-Striebel (RTS) smoothing to the results of a forward pass.

    smoothed[T-1] = filtered[T-1], then backward for k = T-2 to 0:

        J = Pf[k] Fᵀ Pp[k+1]^{-1}
        xs[k] = xf[k] + J (xs[k+1] - xp[k+1])
        Ps[k] = Pf[k] + J (Ps[k+1] - Pp[k+1]) Jᵀ

    Args:
        filtered (Sequence[StateEstimate]): Filtered estimates (length T).
        predicted (Sequence[StateEstimate]): Predicted estimates (length T + 1).
        dynamics (LinearDynamicsModel): Process model used in the forward pass.
        max_condition (float | None): Largest accepted condition number of predicted covariances.
            Default: 1 / eps of the dtype.

    Returns:
        list[StateEstimate]: Smoothed estimates (length T).

    Raises:
        DimensionMismatch: If ``len(predicted) != len(filtered) + 1``.
        SingularPredictedCovariance: If a predicted covariance cannot be inverted. The error holds
            the failing ``step`` and, as ``partial``, the smoothed estimates of the following steps.
    """
    if len(predicted) != len(filtered) + 1:
        raise DimensionMismatch(
            f"Expected {len(filtered) + 1} predicted estimates for {len(filtered)} filtered ones, got {len(predicted)}"
        )

    length = len(filtered)
    logger.debug("Smoothing %d estimates", length)
    if length == 0:
        return []

    smoothed = [filtered[-1].clone()]  # Reversed in time, the last estimate is already the best one
    for k in range(length - 2, -1, -1):
        following = smoothed[-1]
        try:
            precision = invert(predicted[k + 1].covariance, SingularPredictedCovariance, max_condition)
        except KalmanError as error:
            logger.debug("Smoothing failed at step %d: %s", k, error.message)
            raise error.at_step(k, smoothed[::-1]) from None

        gain = filtered[k].covariance @ dynamics.transition.mT @ precision
        state = filtered[k].state + gain @ (following.state - predicted[k + 1].state)
        covariance = filtered[k].covariance + gain @ (following.covariance - predicted[k + 1].covariance) @ gain.mT
        smoothed.append(StateEstimate(state, covariance))

    return smoothed[::-1]


def _check_estimate(estimate: StateEstimate, dim: int) -> None:
    DimensionMismatch.check("State", estimate.state, (dim, 1))
    DimensionMismatch.check("Covariance", estimate.covariance, (dim, dim))


def _check_models(dynamics: LinearDynamicsModel, observation: ObservationModel) -> None:
    if dynamics.state_dim != observation.state_dim:
        raise DimensionMismatch(
            f"Dynamics model has state dimension {dynamics.state_dim}, "
            f"but observation model expects {observation.state_dim}"
        )


class KalmanEngine:
    """Kalman filter and RTS smoother for a fixed pair of models.

    It estimates the hidden state of the system:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = h(x_k)    + v_k,   v_k ~ N(0, R)

    With a :class:`~torch_ekf.models.LinearObservationModel` (h(x) = H x), this is the classic
    Kalman filter. With a :class:`~torch_ekf.models.LinearizedObservationModel`, h is linearized at
    each predicted state (extended Kalman filter).

    Numerical notes:
    - Everything follows the dtype and device of the models: use `to` to switch to float64
      (recommended when the filter is badly conditioned), or to cuda.
    - ``joseph_update`` trades speed for a more robust covariance update.

    Attributes:
        dynamics (LinearDynamicsModel): Process model (F, Q).
        observation (ObservationModel): Observation model.
        joseph_update (bool): If True, use the Joseph form covariance update.
            Default: False
        max_condition (float | None): Largest accepted condition number for inverted covariances.
            Default: None (1 / eps of the dtype)
    """

    def __init__(
        self,
        dynamics: LinearDynamicsModel,
        observation: ObservationModel,
        *,
        joseph_update=False,
        max_condition: float | None = None,
    ) -> None:
        _check_models(dynamics, observation)
        self.dynamics = dynamics
        self.observation = observation
        self.joseph_update = joseph_update
        self.max_condition = max_condition

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.dynamics.state_dim

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.observation.measure_dim

    @property
    def device(self) -> torch.device:
        return self.dynamics.device

    @property
    def dtype(self) -> torch.dtype:
        return self.dynamics.dtype

    @overload
    def to(self, dtype: torch.dtype) -> KalmanEngine: ...

    @overload
    def to(self, device: torch.device) -> KalmanEngine: ...

    def to(self, fmt):
        """Convert the engine to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the models to.

        Returns:
            KalmanEngine: A new engine with converted models and the same options.
        """
        return KalmanEngine(
            self.dynamics.to(fmt),
            self.observation.to(fmt),
            joseph_update=self.joseph_update,
            max_condition=self.max_condition,
        )

    def predict(self, estimate: StateEstimate) -> StateEstimate:
        """Predicted estimate on the next time step. See :func:`predict_step`."""
        return predict_step(estimate, self.dynamics)

    def project(self, estimate: StateEstimate) -> StateEstimate:
        """Expected observation distribution. See :func:`project`."""
        return project(estimate, self.observation)

    def update(self, estimate: StateEstimate, measure: torch.Tensor) -> StateEstimate:
        """Posterior estimate given a new observation. See :func:`update_step`."""
        return update_step(
            estimate,
            measure,
            self.observation,
            joseph_update=self.joseph_update,
            max_condition=self.max_condition,
        )

    def filter(self, prior: StateEstimate, measures: Sequence[torch.Tensor] | torch.Tensor) -> FilterResult:
        """Forward pass over a sequence of observations. See :func:`filter`.

        The prior is converted to the dtype and device of the engine.
        """
        return filter(
            prior.to(self.dtype).to(self.device),
            self.dynamics,
            self.observation,
            measures,
            joseph_update=self.joseph_update,
            max_condition=self.max_condition,
        )

    def smooth(self, filtered: Sequence[StateEstimate], predicted: Sequence[StateEstimate]) -> list[StateEstimate]:
        """RTS smoothing of a forward pass. See :func:`smooth`."""
        return smooth(filtered, predicted, self.dynamics, max_condition=self.max_condition)

    def __repr__(self) -> str:
        """Convert the engine into a readable string."""
        header = f"Kalman Engine (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
        process = repr(self.dynamics)
        measurement = repr(self.observation)
        n_char = max(len(line) for line in (header + "\n" + process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement])
