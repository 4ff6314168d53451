# gmm_em/_kernels.py
"""Log-domain numeric kernels shared by every part of the engine.

Everything here is a pure function of its tensor arguments:

- row-wise log-sum-exp normalization (log p(x) and log posteriors),
- precision-Cholesky factors for diagonal and full covariances,
- log N(x | mu, Sigma) evaluated through those factors,
- variance / eigenvalue flooring.

Covariance storage formats:
- diag: cov shape (K, D)     # per-component per-dimension variances
- full: cov shape (K, D, D)  # full covariance per component
"""

from __future__ import annotations

import math
from typing import Tuple

import torch

from ._errors import FactorizationError


# ---------------------------
# Utilities
# ---------------------------

def safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def log_normalize(weighted_log_prob: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Row-wise log-sum-exp of an (N, K) matrix.

    Returns (log_norm, log_post) where log_norm[i] = log sum_k exp(wlp[i, k])
    and log_post = wlp - log_norm. The row maximum is subtracted before
    exponentiating, so rows spanning hundreds of orders of magnitude neither
    overflow nor underflow. A row that is -inf everywhere gives log_norm = -inf
    and an all -inf log_post row (never NaN).
    """
    row_max = weighted_log_prob.max(dim=1, keepdim=True).values  # (N,1)
    dead = ~torch.isfinite(row_max)
    shift = torch.where(dead, torch.zeros_like(row_max), row_max)

    summed = torch.exp(weighted_log_prob - shift).sum(dim=1, keepdim=True)  # (N,1)
    log_norm = torch.log(summed) + shift  # (N,1)

    log_post = weighted_log_prob - log_norm
    log_post = torch.where(dead, torch.full_like(log_post, -math.inf), log_post)
    return log_norm.squeeze(1), log_post


# ---------------------------
# Precision-Cholesky helpers
# ---------------------------

def precisions_cholesky_diag(var: torch.Tensor) -> torch.Tensor:
    """(K, D) variances -> (K, D) entries 1/sqrt(var)."""
    return 1.0 / torch.sqrt(var)


def precisions_cholesky_full(cov: torch.Tensor) -> torch.Tensor:
    """(K, D, D) covariances -> (K, D, D) lower-triangular P with precision = P^T P.

    cov = L L^T (L lower). precision_chol = inv(L) (lower).
    Raises FactorizationError naming the first component that is not
    positive definite.
    """
    K, D, _ = cov.shape
    L, info = torch.linalg.cholesky_ex(cov)  # batched
    failed = torch.nonzero(info).flatten()
    if failed.numel() > 0:
        k = int(failed[0])
        raise FactorizationError(k, cov[k].detach().clone())
    eye = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, eye, upper=False)


# ---------------------------
# Log Gaussian probability via precisions_cholesky
# ---------------------------

def log_gaussian_prob_diag(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Diag log N(X | means, cov) using precisions_cholesky (1/sqrt(var))."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    y = diff * precisions_chol.unsqueeze(0)     # (N,K,D)
    mahal = torch.sum(y * y, dim=2)             # (N,K)

    # 0.5 * logdet(precision) = sum_d log(prec_chol_{k,d})
    log_det_term = torch.sum(torch.log(precisions_chol), dim=1)  # (K,)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def log_gaussian_prob_full(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Full-cov log N using precision_cholesky (K,D,D lower)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def whiten_full(centered: torch.Tensor, precisions_chol: torch.Tensor) -> torch.Tensor:
    """(K, D) per-component vectors -> P[k] @ v[k]."""
    return torch.einsum('kd,ked->ke', centered, precisions_chol)


# ---------------------------
# Flooring
# ---------------------------

def floor_variances(var: torch.Tensor, floor: float) -> torch.Tensor:
    return var.clamp_min(floor)


def floor_eigenvalues(cov: torch.Tensor, floor: float) -> torch.Tensor:
    """Symmetrize (K, D, D) covariances and clamp their eigenvalues at floor."""
    cov = 0.5 * (cov + cov.transpose(-1, -2))
    evals, evecs = torch.linalg.eigh(cov)
    if bool((evals >= floor).all()):
        return cov
    evals = evals.clamp_min(floor)
    rebuilt = evecs @ torch.diag_embed(evals) @ evecs.transpose(-1, -2)
    return 0.5 * (rebuilt + rebuilt.transpose(-1, -2))
