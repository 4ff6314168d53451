# gmm_em/_errors.py
"""Exception and warning types raised by the GMM engine."""

from __future__ import annotations

from typing import Optional, Tuple

import torch


class GMMConstructionError(ValueError):
    """Invalid n/d/kind, a non-power-of-two split target, or a bad config value."""


class GMMValidationError(ValueError):
    """A GMM's parameters violate the model invariants (weights, floors, shapes)."""


class DimensionMismatchError(ValueError):
    """Data or statistics whose shape disagrees with the model."""

    def __init__(self, what: str, expected: Tuple, actual: Tuple) -> None:
        self.what = what
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(f"{what}: expected shape {self.expected}, got {self.actual}")


class FactorizationError(RuntimeError):
    """Cholesky factorization of a full covariance failed (not positive definite)."""

    def __init__(self, component: int, matrix: Optional[torch.Tensor] = None) -> None:
        self.component = int(component)
        self.matrix = matrix
        msg = f"covariance of component {self.component} is not positive definite"
        if matrix is not None:
            eigvals = torch.linalg.eigvalsh(0.5 * (matrix + matrix.transpose(-1, -2)))
            msg += f" (min eigenvalue {float(eigvals.min()):.3e}):\n{matrix}"
        super().__init__(msg)


class ZeroDensityWarning(RuntimeWarning):
    """Some data points have zero density under every mixture component."""
