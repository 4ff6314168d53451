# gmm_em/_model.py
"""The GMM parameter container.

A GMM holds n weights, an (n, d) matrix of means and one covariance block,
which is a tagged union over the two storage formats:

- DiagCovariance: var shape (n, d)
- FullCovariance: cov shape (n, d, d)

Algorithms branch on the covariance tag once, at the top of each operation.
Every mutating operation appends a HistoryEntry through GMM.record.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from ._errors import DimensionMismatchError, FactorizationError, GMMConstructionError, GMMValidationError
from ._kernels import precisions_cholesky_full

logger = logging.getLogger(__name__)


class CovarianceKind(str, Enum):
    DIAG = "diag"
    FULL = "full"

    @classmethod
    def parse(cls, kind: Union[str, "CovarianceKind"]) -> "CovarianceKind":
        try:
            return cls(kind)
        except ValueError:
            raise GMMConstructionError(f"Unknown covariance kind={kind!r}") from None


@dataclass(frozen=True)
class DiagCovariance:
    var: torch.Tensor  # (K,D)
    kind: ClassVar[CovarianceKind] = CovarianceKind.DIAG

    @property
    def tensor(self) -> torch.Tensor:
        return self.var


@dataclass(frozen=True)
class FullCovariance:
    cov: torch.Tensor  # (K,D,D)
    kind: ClassVar[CovarianceKind] = CovarianceKind.FULL

    @property
    def tensor(self) -> torch.Tensor:
        return self.cov


Covariance = Union[DiagCovariance, FullCovariance]


def unknown_covariance(covariance) -> TypeError:
    return TypeError(f"Unsupported covariance representation: {type(covariance).__name__}")


def make_covariance(kind: Union[str, CovarianceKind], tensor: torch.Tensor) -> Covariance:
    kind = CovarianceKind.parse(kind)
    if kind is CovarianceKind.DIAG:
        return DiagCovariance(tensor)
    elif kind is CovarianceKind.FULL:
        return FullCovariance(tensor)
    raise unknown_covariance(kind)


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: float
    event: str

    def __str__(self) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.timestamp))
        return f"{stamp}: {self.event}"


def _is_power_of_two(n: int) -> bool:
    return n >= 1 and (n & (n - 1)) == 0


class GMM:
    """Weighted sum of n multivariate Gaussians in d dimensions.

    GMM(n, d, kind) gives uniform weights, zero means and identity
    covariances. Use GMM.from_parameters to wrap existing tensors, or the
    initializers in gmm_em (gmm_from_data, kmeans_init, split_init,
    train_gmm) to build one from data.
    """

    def __init__(
        self,
        n: int,
        d: int,
        kind: Union[str, CovarianceKind] = "diag",
        *,
        dtype: torch.dtype = torch.float64,
        device=None,
    ) -> None:
        for name, value in (("n", n), ("d", d)):
            if value != int(value) or int(value) < 1:
                raise GMMConstructionError(f"{name} must be a positive integer, got {value!r}")
        kind = CovarianceKind.parse(kind)
        n, d = int(n), int(d)

        self._n = n
        self._d = d
        self.weights = torch.full((n,), 1.0 / n, device=device, dtype=dtype)
        self.means = torch.zeros((n, d), device=device, dtype=dtype)
        if kind is CovarianceKind.DIAG:
            covariance: Covariance = DiagCovariance(torch.ones((n, d), device=device, dtype=dtype))
        elif kind is CovarianceKind.FULL:
            eye = torch.eye(d, device=device, dtype=dtype)
            covariance = FullCovariance(eye.unsqueeze(0).expand(n, d, d).clone())
        else:
            raise unknown_covariance(kind)
        self._covariance = covariance
        self._history: List[HistoryEntry] = []
        self.record(f"Initialized GMM with n={n}, d={d}, kind={kind.value}")

    @classmethod
    def from_parameters(
        cls,
        weights,
        means,
        covars,
        kind: Union[str, CovarianceKind] = "diag",
        *,
        history: Sequence[HistoryEntry] = (),
        event: Optional[str] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "GMM":
        """Wrap existing parameters. Weights are re-normalized; shapes are checked."""
        if isinstance(covars, (DiagCovariance, FullCovariance)):
            kind, covars = covars.kind, covars.tensor
        kind = CovarianceKind.parse(kind)
        if dtype is None and not isinstance(means, (torch.Tensor, np.ndarray)):
            dtype = torch.float64
        means = to_tensor(means, dtype=dtype)
        dtype = means.dtype if dtype is None else dtype
        if not means.is_floating_point():
            means = means.to(torch.float64)
            dtype = means.dtype
        if means.dim() != 2:
            raise DimensionMismatchError("means", ("n", "d"), tuple(means.shape))
        n, d = means.shape
        if n < 1 or d < 1:
            raise GMMConstructionError(f"n and d must be positive, got n={n}, d={d}")
        weights = to_tensor(weights, dtype=dtype, device=means.device)
        covars = to_tensor(covars, dtype=dtype, device=means.device)
        if weights.shape != (n,):
            raise DimensionMismatchError("weights", (n,), tuple(weights.shape))

        gmm = cls.__new__(cls)
        gmm._n, gmm._d = int(n), int(d)
        gmm.weights = weights / weights.sum()
        gmm.means = means
        gmm._history = list(history)
        gmm._covariance = gmm._checked_covariance(make_covariance(kind, covars))
        if event is not None:
            gmm.record(event)
        return gmm

    # -----------------------
    # Attributes
    # -----------------------

    @property
    def n(self) -> int:
        return self._n

    @property
    def d(self) -> int:
        return self._d

    @property
    def kind(self) -> CovarianceKind:
        return self._covariance.kind

    @property
    def dtype(self) -> torch.dtype:
        return self.means.dtype

    @property
    def device(self) -> torch.device:
        return self.means.device

    @property
    def covariance(self) -> Covariance:
        return self._covariance

    @covariance.setter
    def covariance(self, covariance: Covariance) -> None:
        if covariance.kind is not self.kind:
            raise GMMConstructionError(
                f"cannot replace {self.kind.value} covariance with {covariance.kind.value}; "
                "use to_full()/to_diag() to convert"
            )
        self._covariance = self._checked_covariance(covariance)

    @property
    def covars(self) -> torch.Tensor:
        """Raw covariance tensor: (n, d) variances or (n, d, d) matrices."""
        return self._covariance.tensor

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._history)

    def _checked_covariance(self, covariance: Covariance) -> Covariance:
        n, d = self._n, self._d
        if isinstance(covariance, DiagCovariance):
            expected: Tuple[int, ...] = (n, d)
        elif isinstance(covariance, FullCovariance):
            expected = (n, d, d)
        else:
            raise unknown_covariance(covariance)
        if tuple(covariance.tensor.shape) != expected:
            raise DimensionMismatchError(f"{covariance.kind.value} covariance", expected, tuple(covariance.tensor.shape))
        return covariance

    # -----------------------
    # Lifecycle
    # -----------------------

    def record(self, event: str) -> HistoryEntry:
        """Append an event to the history log."""
        entry = HistoryEntry(timestamp=time.time(), event=str(event))
        self._history.append(entry)
        logger.debug("%s", entry.event)
        return entry

    def normalize_weights(self) -> None:
        self.weights = self.weights / self.weights.sum()

    def copy(self) -> "GMM":
        return copy.deepcopy(self)

    def validate(self, var_floor: Optional[float] = None, atol: float = 1e-6) -> "GMM":
        """Check the model invariants, raising GMMValidationError on the first violation."""
        n, d = self._n, self._d
        if tuple(self.weights.shape) != (n,) or tuple(self.means.shape) != (n, d):
            raise GMMValidationError(
                f"weights/means shapes {tuple(self.weights.shape)}/{tuple(self.means.shape)} do not match n={n}, d={d}"
            )
        if not bool(torch.isfinite(self.weights).all()) or bool((self.weights < 0).any()):
            raise GMMValidationError("weights must be finite and non-negative")
        total = float(self.weights.sum())
        if abs(total - 1.0) > atol:
            raise GMMValidationError(f"weights sum to {total}, not 1")
        if not bool(torch.isfinite(self.means).all()):
            raise GMMValidationError("means must be finite")

        lower = 0.0 if var_floor is None else var_floor * (1.0 - 1e-6)
        cov = self._covariance
        if isinstance(cov, DiagCovariance):
            smallest = float(cov.var.min())
            if not bool(torch.isfinite(cov.var).all()) or smallest <= 0 or smallest < lower:
                raise GMMValidationError(f"variances must be finite and above the floor (min={smallest:.3e})")
        elif isinstance(cov, FullCovariance):
            if not torch.allclose(cov.cov, cov.cov.transpose(-1, -2), atol=atol):
                raise GMMValidationError("full covariances must be symmetric")
            try:
                precisions_cholesky_full(cov.cov)
            except FactorizationError as exc:
                raise GMMValidationError(str(exc)) from exc
            smallest = float(torch.linalg.eigvalsh(cov.cov).min())
            if smallest < lower:
                raise GMMValidationError(f"covariance eigenvalue {smallest:.3e} below floor {var_floor}")
        else:
            raise unknown_covariance(cov)
        return self

    # -----------------------
    # Conversion / introspection
    # -----------------------

    def to_full(self) -> "GMM":
        """New full-covariance GMM with the same parameters."""
        cov = self._covariance
        if isinstance(cov, DiagCovariance):
            full = torch.diag_embed(cov.var)
        elif isinstance(cov, FullCovariance):
            full = cov.cov.clone()
        else:
            raise unknown_covariance(cov)
        return GMM.from_parameters(
            self.weights.clone(), self.means.clone(), FullCovariance(full),
            history=self._history, event="Converted to full covariance",
        )

    def to_diag(self) -> "GMM":
        """New diagonal GMM keeping only the variances of each covariance."""
        cov = self._covariance
        if isinstance(cov, DiagCovariance):
            var = cov.var.clone()
        elif isinstance(cov, FullCovariance):
            var = torch.diagonal(cov.cov, dim1=1, dim2=2).clone()
        else:
            raise unknown_covariance(cov)
        return GMM.from_parameters(
            self.weights.clone(), self.means.clone(), DiagCovariance(var),
            history=self._history, event="Converted to diagonal covariance",
        )

    def nparams(self) -> int:
        """Number of free parameters."""
        n, d = self._n, self._d
        p = (n - 1) + n * d
        cov = self._covariance
        if isinstance(cov, DiagCovariance):
            p += n * d
        elif isinstance(cov, FullCovariance):
            p += n * d * (d + 1) // 2
        else:
            raise unknown_covariance(cov)
        return int(p)

    @torch.no_grad()
    def sample(self, n_samples: int, generator: Optional[torch.Generator] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Draw from the mixture.

        Returns:
          X: (n_samples, d)
          labels: (n_samples,)
        """
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")
        labels = torch.multinomial(self.weights, n_samples, replacement=True, generator=generator)
        noise = torch.randn((n_samples, self._d), generator=generator, dtype=self.dtype, device=self.device)
        selected_means = self.means[labels]  # (n_samples, D)

        cov = self._covariance
        if isinstance(cov, DiagCovariance):
            X = selected_means + noise * torch.sqrt(cov.var[labels])
        elif isinstance(cov, FullCovariance):
            L = torch.linalg.cholesky(cov.cov)  # (K,D,D)
            X = selected_means + torch.einsum('nde,ne->nd', L[labels], noise)
        else:
            raise unknown_covariance(cov)
        return X, labels

    def __repr__(self) -> str:
        return f"GMM(n={self._n}, d={self._d}, kind={self.kind.value!r}, dtype={self.dtype})"


# ---------------------------
# Data boundary
# ---------------------------

def to_tensor(x, dtype: Optional[torch.dtype] = None, device=None) -> torch.Tensor:
    """torch.as_tensor that also takes numpy views with negative strides (X[::-1], np.flip)."""
    if isinstance(x, np.ndarray):
        x = torch.from_numpy(np.ascontiguousarray(x))
    return torch.as_tensor(x, dtype=dtype, device=device)


def as_data(gmm: GMM, x) -> torch.Tensor:
    """Convert x to a 2-D tensor in the GMM's dtype/device, or fail on shape."""
    X = to_tensor(x, dtype=gmm.dtype, device=gmm.device)
    if X.dim() != 2 or X.shape[1] != gmm.d:
        raise DimensionMismatchError("data", ("nx", gmm.d), tuple(X.shape))
    return X


def check_power_of_two(n: int) -> None:
    if not _is_power_of_two(int(n)):
        raise GMMConstructionError(f"n must be a power of 2 for split initialization, got {n}")
