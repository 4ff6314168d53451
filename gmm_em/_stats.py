# gmm_em/_stats.py
"""Baum-Welch sufficient statistics against a frozen GMM.

Per chunk of data (against one read-only Snapshot):

    n[k]    = sum_i post[i,k]                       (K,)
    f[k]    = sum_i post[i,k] x_i                   (K,D)
    s[k]    = sum_i post[i,k] x_i * x_i             (K,D)    diagonal GMM
    s[k]    = sum_i post[i,k] x_i x_i^T             (K,D,D)  full GMM

Partials are added element-wise, so the totals do not depend on how the data
was chunked or in which order the workers finished.
"""

from __future__ import annotations

import functools
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional, Sequence

import torch

from ._density import Snapshot, posterior_from_snapshot, snapshot
from ._errors import DimensionMismatchError
from ._model import GMM, DiagCovariance, FullCovariance, unknown_covariance
from ._parallel import Chunk, map_reduce, partition


def _add_optional(a: Optional[torch.Tensor], b: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
    if a is None or b is None:
        return None
    return a + b


@dataclass(frozen=True)
class Stats:
    """Uncentered zero/first/second order statistics plus the summed log-likelihood."""

    n_frames: int
    llh: float
    n: torch.Tensor                  # (K,)
    f: Optional[torch.Tensor] = None  # (K,D)
    s: Optional[torch.Tensor] = None  # (K,D) or (K,D,D)

    def __add__(self, other: "Stats") -> "Stats":
        if not isinstance(other, Stats):
            return NotImplemented
        return Stats(
            n_frames=self.n_frames + other.n_frames,
            llh=self.llh + other.llh,
            n=self.n + other.n,
            f=_add_optional(self.f, other.f),
            s=_add_optional(self.s, other.s),
        )

    @property
    def order(self) -> int:
        if self.s is not None:
            return 2
        return 1 if self.f is not None else 0

    def avll(self, d: int) -> float:
        """Average per-frame log-likelihood divided by d, as reported by avll()."""
        if self.n_frames == 0:
            raise DimensionMismatchError("statistics", ("n_frames > 0",), (0,))
        return self.llh / self.n_frames / d


def _check_order(order: int) -> int:
    if order not in (0, 1, 2):
        raise ValueError(f"order must be 0, 1 or 2, got {order}")
    return order


@torch.no_grad()
def accumulate(snap: Snapshot, order: int, chunk: Chunk) -> Stats:
    """Statistics of one chunk. Pure: reads snap and chunk, returns a new Stats."""
    offset, X = chunk
    log_norm, log_post, _ = posterior_from_snapshot(snap, X, offset)
    resp = log_post.exp()  # (N,K); zero rows for zero-density points

    n = resp.sum(dim=0)  # (K,)
    f = s = None
    if order >= 1:
        f = resp.T @ X  # (K,D)
    if order >= 2:
        cov = snap.covariance
        if isinstance(cov, DiagCovariance):
            s = resp.T @ (X * X)  # (K,D)
        elif isinstance(cov, FullCovariance):
            s = torch.einsum('nk,nd,ne->kde', resp, X, X)  # (K,D,D)
        else:
            raise unknown_covariance(cov)
    return Stats(n_frames=int(X.shape[0]), llh=float(log_norm.sum()), n=n, f=f, s=s)


def accumulate_chunks(
    gmm: GMM,
    chunks: Sequence[Chunk],
    order: int = 2,
    executor: Optional[Executor] = None,
) -> Stats:
    """Map accumulate over already partitioned data and sum the partials."""
    fn = functools.partial(accumulate, snapshot(gmm), _check_order(order))
    return map_reduce(fn, chunks, executor)


def stats(
    gmm: GMM,
    x,
    order: int = 2,
    *,
    executor: Optional[Executor] = None,
    n_chunks: int = 1,
) -> Stats:
    """Baum-Welch statistics of x against gmm.

    Args:
        gmm: the model; it is snapshotted and must not be modified concurrently.
        x: (nx, d) data, or a list of (nx_i, d) chunks.
        order: 0 (occupancy only), 1 (+ first order) or 2 (+ second order).
        executor: where chunks are processed; defaults to the calling thread.
        n_chunks: number of contiguous row blocks x is cut into.
    """
    _check_order(order)
    return accumulate_chunks(gmm, partition(gmm, x, n_chunks), order, executor)
