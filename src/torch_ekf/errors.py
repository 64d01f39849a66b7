"""Errors raised by torch-ekf.

All errors derive from :class:`KalmanError`. When raised from a recursion
(:func:`~torch_ekf.engine.filter` or :func:`~torch_ekf.engine.smooth`), the
error is annotated with the failing time ``step`` and with the ``partial``
results that remain valid.
"""

from __future__ import annotations

from typing import Any

import torch


class KalmanError(Exception):
    """Base class for torch-ekf errors.

    Attributes:
        step (int | None): Time index at which the error happened (None outside of a recursion).
        partial (Any): Results computed before the failure that are still valid, if any.
            - ``filter``: a :class:`~torch_ekf.engine.FilterResult` with ``filtered[:step]`` and
              ``predicted[:step + 1]``.
            - ``smooth``: the list of smoothed states for indices ``step + 1`` to ``T - 1``.
    """

    def __init__(self, message: str, *, step: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.partial: Any = None

    def at_step(self, step: int, partial: Any = None) -> KalmanError:
        """Annotate the error with the failing step and partial results."""
        self.step = step
        self.partial = partial
        return self

    def __str__(self) -> str:
        if self.step is None:
            return self.message
        return f"[step {self.step}] {self.message}"


class DimensionMismatch(KalmanError, ValueError):
    """A vector, matrix or sequence does not match the declared dimensions."""

    @classmethod
    def check(cls, name: str, tensor: torch.Tensor, expected: tuple[int, ...]) -> None:
        """Check the trailing dimensions of a tensor.

        Leading (batch) dimensions are not checked: they only have to broadcast.

        Args:
            name (str): Name of the checked quantity (used in the message).
            tensor (torch.Tensor): Tensor to check.
            expected (tuple[int, ...]): Expected trailing shape.

        Raises:
            DimensionMismatch: If the trailing shape differs.
        """
        if tensor.ndim < len(expected) or tuple(tensor.shape[-len(expected) :]) != expected:
            shape = "(..., " + ", ".join(map(str, expected)) + ")"
            raise cls(f"{name} should have shape {shape}, got {tuple(tensor.shape)}")


class SingularCovarianceError(KalmanError, ArithmeticError):
    """A covariance matrix could not be inverted.

    Attributes:
        matrix (torch.Tensor): The offending matrix.
        condition (torch.Tensor): Its condition number (inf or nan when exactly singular).
    """

    kind = "covariance"

    def __init__(self, matrix: torch.Tensor, condition: torch.Tensor, *, step: int | None = None) -> None:
        dim = matrix.shape[-1]
        worst = condition.max().item() if condition.numel() else float("nan")
        super().__init__(
            f"Cannot invert the {self.kind} ({dim}x{dim}, condition number: {worst:.3g}). "
            "The model is probably degenerate.",
            step=step,
        )
        self.matrix = matrix
        self.condition = condition


class SingularInnovationCovariance(SingularCovarianceError):
    """The innovation covariance S = H P Hᵀ + R is singular.

    Usually a zero (or tiny) measurement noise combined with a rank-deficient
    measurement matrix, or duplicated measurement dimensions.
    """

    kind = "innovation covariance S = H P Hᵀ + R"


class SingularPredictedCovariance(SingularCovarianceError):
    """A predicted covariance F P Fᵀ + Q is singular during RTS smoothing."""

    kind = "predicted covariance F P Fᵀ + Q"
