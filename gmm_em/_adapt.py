# gmm_em/_adapt.py
"""UBM-relative statistics, MAP adaptation and dot-scoring.

Centered/scaled statistics express Baum-Welch statistics in the UBM's own
frame: first order stats are centered on each component mean and whitened
by its covariance, so statistics of different utterances can be added and
compared directly.
"""

from __future__ import annotations

import functools
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

import torch

from ._config import resolve_config
from ._density import Snapshot, snapshot
from ._errors import DimensionMismatchError
from ._kernels import floor_eigenvalues, floor_variances, whiten_full
from ._model import GMM, Covariance, DiagCovariance, FullCovariance, unknown_covariance
from ._parallel import Chunk, map_reduce, partition
from ._stats import accumulate, stats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CSstats:
    """Centered, scaled statistics: occupancy n (K,), first order f (K,D), optional s (K,D)."""

    n: torch.Tensor
    f: torch.Tensor
    s: Optional[torch.Tensor] = None

    def __post_init__(self) -> None:
        if self.n.dim() != 1:
            raise DimensionMismatchError("CSstats.n", ("K",), tuple(self.n.shape))
        K = self.n.shape[0]
        if self.f.dim() != 2 or self.f.shape[0] != K:
            raise DimensionMismatchError("CSstats.f", (K, "D"), tuple(self.f.shape))
        if self.s is not None and self.s.shape != self.f.shape:
            raise DimensionMismatchError("CSstats.s", tuple(self.f.shape), tuple(self.s.shape))

    def __add__(self, other: "CSstats") -> "CSstats":
        if not isinstance(other, CSstats):
            return NotImplemented
        if self.f.shape != other.f.shape:
            raise DimensionMismatchError("CSstats", tuple(self.f.shape), tuple(other.f.shape))
        s = None if self.s is None or other.s is None else self.s + other.s
        return CSstats(n=self.n + other.n, f=self.f + other.f, s=s)

    @property
    def shape(self):
        return tuple(self.f.shape)

    @classmethod
    def from_data(cls, gmm: GMM, x, order: int = 1, **kwargs) -> "CSstats":
        return csstats(gmm, x, order, **kwargs)


@torch.no_grad()
def _accumulate_centered(snap: Snapshot, order: int, chunk: Chunk) -> CSstats:
    """Raw statistics of one chunk, centered on the UBM means and whitened."""
    raw = accumulate(snap, order, chunk)
    mu = snap.means                       # (K,D)
    n_mu = raw.n.unsqueeze(1) * mu        # (K,D)
    centered = raw.f - n_mu               # (K,D)

    cov = snap.covariance
    s = None
    if isinstance(cov, DiagCovariance):
        f = centered * snap.prec_chol     # prec_chol = 1/sigma
        if order >= 2:
            s = (raw.s - 2.0 * raw.f * mu + n_mu * mu) * snap.prec_chol ** 2
    elif isinstance(cov, FullCovariance):
        f = whiten_full(centered, snap.prec_chol)
        if order >= 2:
            # sum_i post (x - mu)(x - mu)^T, whitened, diagonal only
            scatter = (
                raw.s
                - torch.einsum('kd,ke->kde', raw.f, mu)
                - torch.einsum('kd,ke->kde', mu, raw.f)
                + torch.einsum('kd,ke->kde', n_mu, mu)
            )
            white = snap.prec_chol @ scatter @ snap.prec_chol.transpose(-1, -2)
            s = torch.diagonal(white, dim1=1, dim2=2).clone()
    else:
        raise unknown_covariance(cov)
    return CSstats(n=raw.n, f=f, s=s)


def csstats(
    gmm: GMM,
    x,
    order: int = 1,
    *,
    executor: Optional[Executor] = None,
    n_chunks: int = 1,
) -> CSstats:
    """Centered and scaled statistics of x relative to gmm (the UBM)."""
    if order not in (1, 2):
        raise ValueError(f"order must be 1 or 2, got {order}")
    fn = functools.partial(_accumulate_centered, snapshot(gmm), order)
    return map_reduce(fn, partition(gmm, x, n_chunks), executor)


@torch.no_grad()
def map_adapt(
    gmm: GMM,
    x,
    r: float = 16.0,
    *,
    means: bool = True,
    weights: bool = False,
    covars: bool = False,
    var_floor: Optional[float] = None,
    inplace: bool = False,
    executor: Optional[Executor] = None,
    n_chunks: int = 1,
) -> GMM:
    """MAP adaptation of the UBM gmm towards x with relevance factor r.

    With occupancy n_k, alpha_k = n_k / (n_k + r) and every adapted quantity
    is alpha_k * (data estimate) + (1 - alpha_k) * (UBM value). Components
    that see no data keep the UBM parameters. Returns the adapted GMM (a copy
    unless inplace=True).
    """
    if r < 0:
        raise ValueError(f"relevance factor r must be non-negative, got {r}")
    floor = resolve_config(var_floor=var_floor).var_floor
    st = stats(gmm, x, order=2 if covars else 1, executor=executor, n_chunks=n_chunks)

    nk = st.n  # (K,)
    occupied = nk > 0
    safe_nk = torch.where(occupied, nk, torch.ones_like(nk))
    alpha = torch.where(occupied, nk / (nk + r), torch.zeros_like(nk))  # (K,)
    a = alpha.unsqueeze(1)

    new_means = gmm.means
    if means:
        new_means = a * (st.f / safe_nk.unsqueeze(1)) + (1.0 - a) * gmm.means

    new_weights = gmm.weights
    if weights:
        new_weights = alpha * nk / nk.sum() + (1.0 - alpha) * gmm.weights

    new_cov: Covariance = gmm.covariance
    if covars:
        cov = gmm.covariance
        if isinstance(cov, DiagCovariance):
            second = st.s / safe_nk.unsqueeze(1)
            var = a * second + (1.0 - a) * (cov.var + gmm.means ** 2) - new_means ** 2
            var = floor_variances(var, floor)
            new_cov = DiagCovariance(torch.where(occupied.unsqueeze(1), var, cov.var))
        elif isinstance(cov, FullCovariance):
            a3 = alpha.view(-1, 1, 1)
            second = st.s / safe_nk.view(-1, 1, 1)
            ubm_second = cov.cov + torch.einsum('kd,ke->kde', gmm.means, gmm.means)
            full = a3 * second + (1.0 - a3) * ubm_second - torch.einsum('kd,ke->kde', new_means, new_means)
            full = floor_eigenvalues(full, floor)
            new_cov = FullCovariance(torch.where(occupied.view(-1, 1, 1), full, cov.cov))
        else:
            raise unknown_covariance(cov)

    target = gmm if inplace else gmm.copy()
    target.weights = new_weights.clone()
    if weights:
        target.normalize_weights()
    target.means = new_means.clone()
    target.covariance = type(new_cov)(new_cov.tensor.clone())

    adapted = [name for name, flag in (("means", means), ("weights", weights), ("covars", covars)) if flag]
    target.record(
        f"MAP adapted with r={r} on {st.n_frames} data points ({', '.join(adapted) or 'nothing'})"
    )
    return target


def dotscore(x: CSstats, y: CSstats, r: float = 1.0) -> float:
    """Linear approximation of the GMM-UBM log-likelihood ratio.

    x are the enrollment statistics, y the test statistics:
    sum_k sum_d x.f[k,d] / (x.n[k] + r) * y.f[k,d].
    """
    if x.shape != y.shape:
        raise DimensionMismatchError("test CSstats", x.shape, y.shape)
    return float(((x.f / (x.n + r).unsqueeze(1)) * y.f).sum())
