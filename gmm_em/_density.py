# gmm_em/_density.py
"""Per-Gaussian log-likelihoods, average log-likelihood and posteriors.

All mixture sums go through log_normalize, so posteriors stay finite even
when every component density underflows in the linear domain. Points with
zero density under every component are reported with a ZeroDensityWarning.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Tuple

import torch

from ._errors import DimensionMismatchError, ZeroDensityWarning
from ._kernels import (
    log_gaussian_prob_diag,
    log_gaussian_prob_full,
    log_normalize,
    precisions_cholesky_diag,
    precisions_cholesky_full,
    safe_log,
)
from ._model import GMM, Covariance, DiagCovariance, FullCovariance, as_data, unknown_covariance

logger = logging.getLogger(__name__)

_MAX_REPORTED = 10


@dataclass(frozen=True)
class Snapshot:
    """Read-only parameters of a GMM, with the precision factors precomputed.

    Statistics workers only ever see a Snapshot, never the GMM itself.
    """

    log_weights: torch.Tensor  # (K,)
    means: torch.Tensor        # (K,D)
    covariance: Covariance
    prec_chol: torch.Tensor    # (K,D) or (K,D,D)
    log_prob_fn: Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]

    def log_prob(self, X: torch.Tensor) -> torch.Tensor:
        """(N, K) matrix of log N(x_i | mu_k, Sigma_k)."""
        return self.log_prob_fn(X, self.means, self.prec_chol)


@torch.no_grad()
def snapshot(gmm: GMM, clone: bool = True) -> Snapshot:
    """Freeze gmm for density evaluation.

    Raises FactorizationError for a full covariance that is not positive
    definite.
    """
    cov = gmm.covariance
    if isinstance(cov, DiagCovariance):
        prec_chol = precisions_cholesky_diag(cov.var)
        log_prob_fn = log_gaussian_prob_diag
    elif isinstance(cov, FullCovariance):
        prec_chol = precisions_cholesky_full(cov.cov)
        log_prob_fn = log_gaussian_prob_full
    else:
        raise unknown_covariance(cov)

    means = gmm.means
    if clone:
        means = means.clone()
        cov = type(cov)(cov.tensor.clone())
    return Snapshot(
        log_weights=safe_log(gmm.weights.clone()),
        means=means,
        covariance=cov,
        prec_chol=prec_chol,
        log_prob_fn=log_prob_fn,
    )


def report_zero_density(dead: torch.Tensor, offset: int = 0) -> None:
    idx = (torch.nonzero(dead).flatten() + offset).tolist()
    shown = ", ".join(str(i) for i in idx[:_MAX_REPORTED])
    if len(idx) > _MAX_REPORTED:
        shown += ", ..."
    msg = f"{len(idx)} data point(s) have zero density under every component: [{shown}]"
    logger.warning(msg)
    warnings.warn(msg, ZeroDensityWarning, stacklevel=3)


@torch.no_grad()
def posterior_from_snapshot(
    snap: Snapshot,
    X: torch.Tensor,
    offset: int = 0,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Returns (log_norm (N,), log_post (N,K), llpg (N,K)) for one block of data."""
    llpg = snap.log_prob(X)  # (N,K)
    log_norm, log_post = log_normalize(llpg + snap.log_weights.unsqueeze(0))
    dead = torch.isneginf(log_norm)
    if bool(dead.any()):
        report_zero_density(dead, offset)
    return log_norm, log_post, llpg


# -----------------------
# Public API
# -----------------------

@torch.no_grad()
def llpg(gmm: GMM, x) -> torch.Tensor:
    """Per-Gaussian log-likelihood, (nx, n)."""
    X = as_data(gmm, x)
    return snapshot(gmm, clone=False).log_prob(X)


@torch.no_grad()
def avll(gmm: GMM, x) -> float:
    """Average per-frame log-likelihood, divided by the dimension d.

    Dividing by d keeps the number comparable across feature dimensions:
    for a single Gaussian with isotropic variance sigma^2 on matching data
    this is about -log(sigma) - 0.5 * (1 + log(2 pi)).
    """
    X = as_data(gmm, x)
    if X.shape[0] == 0:
        raise DimensionMismatchError("data", ("nx > 0", gmm.d), tuple(X.shape))
    log_norm, _, _ = posterior_from_snapshot(snapshot(gmm, clone=False), X)
    return float(log_norm.mean()) / gmm.d


@torch.no_grad()
def gmmposterior(gmm: GMM, x) -> Tuple[torch.Tensor, torch.Tensor]:
    """Posterior responsibilities (nx, n) together with llpg (nx, n)."""
    X = as_data(gmm, x)
    _, log_post, lp = posterior_from_snapshot(snapshot(gmm, clone=False), X)
    return log_post.exp(), lp


def post(gmm: GMM, x) -> torch.Tensor:
    """Posterior responsibilities p(j | x_i), (nx, n); every row sums to one."""
    return gmmposterior(gmm, x)[0]
