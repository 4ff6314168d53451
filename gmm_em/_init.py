# gmm_em/_init.py
"""GMM constructors that look at data.

- gmm_from_data: one Gaussian with the sample mean and covariance of x
- kmeans_init:   n Gaussians seeded by a clustering collaborator, then EM
- split_init:    one Gaussian split log2(n) times, with EM after every split
- train_gmm:     dispatch on method="split" | "kmeans"
"""

from __future__ import annotations

import functools
import logging
from concurrent.futures import Executor
from typing import Optional, Union

import torch

from ._cluster import ClusterFn, kmeans_cluster
from ._config import TrainingConfig, resolve_config
from ._em import em
from ._errors import DimensionMismatchError, GMMConstructionError
from ._kernels import floor_eigenvalues, floor_variances
from ._model import GMM, CovarianceKind, check_power_of_two, to_tensor, unknown_covariance
from ._split import split

logger = logging.getLogger(__name__)


def _as_matrix(x, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    X = to_tensor(x, dtype=dtype)
    if X.dim() != 2 or X.shape[0] < 1 or X.shape[1] < 1:
        raise DimensionMismatchError("data", ("nx", "d"), tuple(X.shape))
    return X


def _sample_covariance(X: torch.Tensor, kind: CovarianceKind, var_floor: float) -> torch.Tensor:
    """Unbiased sample variance (diag, (D,)) or covariance (full, (D, D)), floored."""
    N, D = X.shape
    Xc = X - X.mean(dim=0, keepdim=True)
    if kind is CovarianceKind.DIAG:
        var = (Xc * Xc).sum(dim=0) / max(N - 1, 1)
        return floor_variances(var, var_floor)
    elif kind is CovarianceKind.FULL:
        cov = (Xc.T @ Xc) / max(N - 1, 1)
        return floor_eigenvalues(cov.unsqueeze(0), var_floor)[0]
    raise unknown_covariance(kind)


@torch.no_grad()
def gmm_from_data(
    x,
    kind: Union[str, CovarianceKind] = "diag",
    *,
    var_floor: Optional[float] = None,
    dtype: torch.dtype = torch.float64,
) -> GMM:
    """Single Gaussian (n=1) with the sample mean and covariance of x."""
    kind = CovarianceKind.parse(kind)
    floor = resolve_config(var_floor=var_floor).var_floor
    X = _as_matrix(x, dtype)
    cov = _sample_covariance(X, kind, floor).unsqueeze(0)
    return GMM.from_parameters(
        torch.ones(1, dtype=dtype), X.mean(dim=0, keepdim=True), cov, kind,
        event=f"Initialized {kind.value} GMM from {X.shape[0]} data points",
    )


@torch.no_grad()
def kmeans_init(
    x,
    n: int,
    kind: Union[str, CovarianceKind] = "diag",
    *,
    config: Optional[TrainingConfig] = None,
    cluster: Optional[ClusterFn] = None,
    executor: Optional[Executor] = None,
    dtype: torch.dtype = torch.float64,
) -> GMM:
    """Seed n Gaussians from clusters of x, then run config.n_iter EM iterations.

    Each component takes the mean and covariance of the points assigned to
    it; clusters with fewer than two points fall back to the global
    covariance (and to the cluster center for an empty cluster).
    """
    if int(n) < 1:
        raise GMMConstructionError(f"n must be positive, got {n}")
    kind = CovarianceKind.parse(kind)
    cfg = resolve_config(config)
    X = _as_matrix(x, dtype)
    N, D = X.shape
    if cluster is None:
        cluster = functools.partial(kmeans_cluster, n_iter=cfg.kmeans_iter)

    centers, labels = cluster(X, n)
    centers = torch.as_tensor(centers, dtype=dtype)
    labels = torch.as_tensor(labels, dtype=torch.long)
    if tuple(centers.shape) != (n, D):
        raise DimensionMismatchError("cluster centers", (n, D), tuple(centers.shape))
    if tuple(labels.shape) != (N,):
        raise DimensionMismatchError("cluster assignment", (N,), tuple(labels.shape))

    global_cov = _sample_covariance(X, kind, cfg.var_floor)
    counts = torch.bincount(labels, minlength=n).to(dtype)  # (K,)
    means = centers.clone()
    covs = []
    for k in range(n):
        members = X[labels == k]
        if members.shape[0] > 0:
            means[k] = members.mean(dim=0)
        if members.shape[0] >= 2:
            covs.append(_sample_covariance(members, kind, cfg.var_floor))
        else:
            covs.append(global_cov.clone())

    gmm = GMM.from_parameters(
        counts / N, means, torch.stack(covs, dim=0), kind,
        event=f"k-means initialization of {n} Gaussians from {N} data points",
    )
    em(gmm, X, config=cfg, executor=executor)
    return gmm


def split_init(
    x,
    n: int,
    kind: Union[str, CovarianceKind] = "diag",
    *,
    config: Optional[TrainingConfig] = None,
    executor: Optional[Executor] = None,
    dtype: torch.dtype = torch.float64,
) -> GMM:
    """Grow a single Gaussian to n (a power of two) by repeated split + EM.

    Every intermediate round runs config.n_iter EM iterations; the round that
    reaches n runs config.final_iter.
    """
    check_power_of_two(n)
    cfg = resolve_config(config)
    X = _as_matrix(x, dtype)
    gmm = gmm_from_data(X, kind, var_floor=cfg.var_floor, dtype=dtype)

    rounds = int(n).bit_length() - 1
    for r in range(rounds):
        gmm = split(gmm, config=cfg)
        n_iter = cfg.final_iter if r == rounds - 1 else cfg.n_iter
        history = em(gmm, X, n_iter, config=cfg, executor=executor)
        logger.info(
            "split round %d/%d: %d Gaussians, avll %s", r + 1, rounds, gmm.n,
            f"{history[-1]:.6f}" if history else "n/a",
        )
    return gmm


def train_gmm(
    x,
    n: int,
    method: str = "split",
    kind: Union[str, CovarianceKind] = "diag",
    *,
    config: Optional[TrainingConfig] = None,
    cluster: Optional[ClusterFn] = None,
    executor: Optional[Executor] = None,
    dtype: torch.dtype = torch.float64,
    **overrides,
) -> GMM:
    """Train an n-component GMM on x.

    method="split" requires n to be a power of two; method="kmeans" uses
    cluster (default: kmeans_cluster). Keyword overrides such as n_iter=,
    n_final= or var_floor= are applied on top of config.
    """
    if int(n) < 1:
        raise GMMConstructionError(f"n must be positive, got {n}")
    cfg = resolve_config(config, **overrides)
    if method == "split":
        return split_init(x, n, kind, config=cfg, executor=executor, dtype=dtype)
    if method == "kmeans":
        return kmeans_init(x, n, kind, config=cfg, cluster=cluster, executor=executor, dtype=dtype)
    raise GMMConstructionError(f"Unknown method={method!r}; expected 'split' or 'kmeans'")
