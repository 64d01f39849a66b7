from __future__ import annotations

import dataclasses
from typing import Sequence, overload

import torch


@dataclasses.dataclass(frozen=True, eq=False)
class StateEstimate:
    """Gaussian estimate of a hidden state.

    It represents the belief x ~ N(state, covariance).

    Conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` are **batch dimensions**: independent estimates
      stored together. They only have to be broadcastable across operations.

    The estimate is frozen: every filtering step builds a new one. Two estimates are equal
    when their tensors are (shapes and values). The covariance is expected to be symmetric
    positive semi-definite, which is not checked.

    Attributes:
        state: Mean of the estimate.
            Shape: ``(..., dim, 1)``
        covariance: Covariance of the estimate.
            Shape: ``(..., dim, dim)``
    """

    state: torch.Tensor
    covariance: torch.Tensor

    @property
    def dim(self) -> int:
        """Dimension of the estimated variable."""
        return self.state.shape[-2]

    @property
    def batch_shape(self) -> torch.Size:
        """Broadcasted batch shape of the estimate."""
        return torch.broadcast_shapes(self.state.shape[:-2], self.covariance.shape[:-2])

    def clone(self) -> StateEstimate:
        """Return a deep copy of the estimate.

        Returns:
            StateEstimate: The cloned estimate, sharing no storage with this one.
        """
        return StateEstimate(self.state.clone(), self.covariance.clone())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StateEstimate):
            return NotImplemented
        return torch.equal(self.state, other.state) and torch.equal(self.covariance, other.covariance)

    __hash__ = None  # type: ignore[assignment]

    def __getitem__(self, idx) -> StateEstimate:
        """Index/slice along batch dimensions.

        State and covariance are first broadcasted to the batch shape, so that a shared
        covariance (without batch dimensions) is indexed like the state.

        Args:
            idx (Any): Index/slice applied to the leading batch dimensions.

        Returns:
            StateEstimate: Indexed estimate.
        """
        batch = self.batch_shape
        return StateEstimate(
            self.state.expand(*batch, self.dim, 1)[idx],
            self.covariance.expand(*batch, self.dim, self.dim)[idx],
        )

    @staticmethod
    def stack(estimates: Sequence[StateEstimate]) -> StateEstimate:
        """Stack a sequence of estimates along a new leading (time) dimension.

        Estimates are broadcasted to a common batch shape first.

        Args:
            estimates (Sequence[StateEstimate]): Non-empty sequence of estimates.

        Returns:
            StateEstimate: Stacked estimate.
                Shape (state): ``(T, ..., dim, 1)``
                Shape (covariance): ``(T, ..., dim, dim)``
        """
        if not estimates:
            raise ValueError("Cannot stack an empty sequence of estimates.")

        batch = torch.broadcast_shapes(*(estimate.batch_shape for estimate in estimates))
        dim = estimates[0].dim
        return StateEstimate(
            torch.stack([estimate.state.expand(*batch, dim, 1) for estimate in estimates]),
            torch.stack([estimate.covariance.expand(*batch, dim, dim) for estimate in estimates]),
        )

    @overload
    def to(self, dtype: torch.dtype) -> StateEstimate: ...

    @overload
    def to(self, device: torch.device) -> StateEstimate: ...

    def to(self, fmt):
        """Convert the estimate to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the estimate to.

        Returns:
            StateEstimate: The estimate with the right format
        """
        return StateEstimate(self.state.to(fmt), self.covariance.to(fmt))

    def mahalanobis_squared(self, point: torch.Tensor) -> torch.Tensor:
        """Compute the squared Mahalanobis distance to a point.

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        Args:
            point (torch.Tensor): Point(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance for broadcasted points & estimates
            Shape: ``(...)``
        """
        diff = self.state - point
        return (diff.mT @ torch.linalg.solve(self.covariance, diff))[..., 0, 0]

    def mahalanobis(self, point: torch.Tensor) -> torch.Tensor:
        """Compute the Mahalanobis distance to a point.

        Args:
            point (torch.Tensor): Point(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Mahalanobis distance for broadcasted points & estimates
            Shape: ``(...)``
        """
        return self.mahalanobis_squared(point).sqrt()

    def log_likelihood(self, point: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of a point under N(state, covariance).

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            point (torch.Tensor): Point(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood for broadcasted points & estimates
            Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(point)
        _, log_det = torch.linalg.slogdet(self.covariance)
        log_2pi = torch.log(torch.tensor(2 * torch.pi, dtype=log_det.dtype, device=log_det.device))
        return -0.5 * (self.dim * log_2pi + log_det + maha_2)

    def likelihood(self, point: torch.Tensor) -> torch.Tensor:
        """Compute the likelihood of a point under N(state, covariance).

        Notes:
            Prefer `log_likelihood` to compare likelihoods.

        Args:
            point (torch.Tensor): Point(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Likelihood for broadcasted points & estimates
            Shape: ``(...)``
        """
        return self.log_likelihood(point).exp()
