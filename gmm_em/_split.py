# gmm_em/_split.py
"""Mixture splitting: double the number of Gaussians, then prune light ones.

Component i becomes children 2i and 2i+1, each with half the parent weight,
the parent covariance, and means mu_i -/+ covfactor * sqrt(lambda) * v,
where (lambda, v) is the principal variance axis of the parent:

- diag: the dimension with the largest variance (first one on ties)
- full: the dominant eigenvector of the covariance

After doubling, every component lighter than minweight is dropped and its
slot is refilled by splitting the currently heaviest component (ties go to
the lowest index), so the component count stays 2n.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import torch

from ._config import TrainingConfig, resolve_config
from ._model import GMM, Covariance, DiagCovariance, FullCovariance, unknown_covariance

logger = logging.getLogger(__name__)

OffsetFn = Callable[[torch.Tensor, float], torch.Tensor]


def _principal_offsets_diag(var: torch.Tensor, covfactor: float) -> torch.Tensor:
    """(K, D) variances -> (K, D) offsets along each component's largest-variance dimension."""
    idx = torch.argmax(var, dim=1, keepdim=True)  # (K,1)
    sigma = torch.sqrt(torch.gather(var, 1, idx))  # (K,1)
    offsets = torch.zeros_like(var)
    offsets.scatter_(1, idx, covfactor * sigma)
    return offsets


def _principal_offsets_full(cov: torch.Tensor, covfactor: float) -> torch.Tensor:
    """(K, D, D) covariances -> (K, D) offsets along each dominant eigenvector."""
    evals, evecs = torch.linalg.eigh(cov)  # ascending
    lam = evals[:, -1].clamp_min(0.0)      # (K,)
    v = evecs[:, :, -1]                    # (K,D)
    return covfactor * torch.sqrt(lam).unsqueeze(1) * v


def _heaviest(weights: torch.Tensor, excluded: set) -> Optional[int]:
    best = None
    for k in range(weights.shape[0]):
        if k in excluded:
            continue
        if best is None or weights[k] > weights[best]:
            best = k
    return best


@torch.no_grad()
def _prune(gmm: GMM, minweight: float, covfactor: float, offset_fn: OffsetFn) -> int:
    """Replace components lighter than minweight by splits of the heaviest one. Returns the count."""
    light = [int(k) for k in torch.nonzero(gmm.weights < minweight).flatten()]
    if not light:
        return 0
    logger.info("Removing %d Gaussian(s) with weight < %g", len(light), minweight)

    weights = gmm.weights.clone()
    means = gmm.means.clone()
    covars = gmm.covars.clone()
    pending = set(light)
    replaced = 0
    for j in light:
        i = _heaviest(weights, pending)
        if i is None:
            logger.warning("No component above minweight=%g left to split", minweight)
            break
        offset = offset_fn(covars[i:i + 1], covfactor)[0]  # (D,)
        weights[i] = weights[j] = weights[i] / 2
        means[j] = means[i] + offset
        means[i] = means[i] - offset
        covars[j] = covars[i]
        pending.discard(j)
        replaced += 1

    gmm.weights = weights
    gmm.normalize_weights()
    gmm.means = means
    gmm.covariance = type(gmm.covariance)(covars)
    return replaced


@torch.no_grad()
def split(
    gmm: GMM,
    minweight: Optional[float] = None,
    covfactor: Optional[float] = None,
    *,
    config: Optional[TrainingConfig] = None,
) -> GMM:
    """Return a new GMM with twice as many components as gmm.

    The input GMM is not modified; its history is carried over.
    """
    cfg = resolve_config(config, minweight=minweight, covfactor=covfactor)
    K, D = gmm.n, gmm.d

    cov = gmm.covariance
    if isinstance(cov, DiagCovariance):
        offset_fn: OffsetFn = _principal_offsets_diag
        children: Covariance = DiagCovariance(cov.var.repeat_interleave(2, dim=0))
    elif isinstance(cov, FullCovariance):
        offset_fn = _principal_offsets_full
        children = FullCovariance(cov.cov.repeat_interleave(2, dim=0))
    else:
        raise unknown_covariance(cov)

    offsets = offset_fn(cov.tensor, cfg.covfactor)  # (K,D)
    means = torch.stack((gmm.means - offsets, gmm.means + offsets), dim=1).reshape(2 * K, D)
    weights = (gmm.weights / 2).repeat_interleave(2)

    new = GMM.from_parameters(weights, means, children, history=gmm.history)
    n_pruned = _prune(new, cfg.minweight, cfg.covfactor, offset_fn)
    new.record(
        f"split to {new.n} Gaussians (covfactor={cfg.covfactor}"
        + (f", {n_pruned} light Gaussian(s) replaced)" if n_pruned else ")")
    )
    return new
