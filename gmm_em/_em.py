# gmm_em/_em.py
"""EM training loop for diagonal and full covariance GMMs.

The E-step is the Baum-Welch statistics pass (so it runs on the caller's
executor, chunk by chunk); the M-step re-estimates the parameters in place
from those statistics. The loop runs a fixed number of iterations; the
caller decides when training is done.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import List, Optional

import torch

from ._config import TrainingConfig, resolve_config
from ._kernels import floor_eigenvalues, floor_variances
from ._model import GMM, Covariance, DiagCovariance, FullCovariance, unknown_covariance
from ._parallel import partition
from ._stats import Stats, accumulate_chunks

logger = logging.getLogger(__name__)


@torch.no_grad()
def _maximization_step(gmm: GMM, st: Stats, config: TrainingConfig) -> None:
    """M-step: replace weights, means and covariances of gmm from order-2 stats.

    Components whose occupancy is below config.min_occupancy keep their mean
    and covariance; their weight still follows the occupancy.
    """
    nk = st.n  # (K,)
    total = float(nk.sum())
    if not total > 0:
        raise ValueError("EM needs data with non-zero density under the model")

    active = nk >= config.min_occupancy  # (K,)
    safe_nk = torch.where(active, nk, torch.ones_like(nk))

    new_weights = nk / total
    new_means = st.f / safe_nk.unsqueeze(1)  # (K,D)
    new_means = torch.where(active.unsqueeze(1), new_means, gmm.means)

    cov = gmm.covariance
    if isinstance(cov, DiagCovariance):
        var = st.s / safe_nk.unsqueeze(1) - new_means * new_means  # (K,D)
        var = floor_variances(var, config.var_floor)
        new_cov: Covariance = DiagCovariance(torch.where(active.unsqueeze(1), var, cov.var))
    elif isinstance(cov, FullCovariance):
        outer = torch.einsum('kd,ke->kde', new_means, new_means)
        full = st.s / safe_nk.view(-1, 1, 1) - outer  # (K,D,D)
        full = floor_eigenvalues(full, config.var_floor)
        new_cov = FullCovariance(torch.where(active.view(-1, 1, 1), full, cov.cov))
    else:
        raise unknown_covariance(cov)

    n_frozen = int((~active).sum())
    if n_frozen:
        logger.debug("M-step: %d component(s) below min_occupancy kept their parameters", n_frozen)

    gmm.weights = new_weights
    gmm.normalize_weights()
    gmm.means = new_means
    gmm.covariance = new_cov


def em(
    gmm: GMM,
    x,
    n_iter: Optional[int] = None,
    *,
    config: Optional[TrainingConfig] = None,
    executor: Optional[Executor] = None,
    n_chunks: Optional[int] = None,
) -> List[float]:
    """Run n_iter EM iterations on gmm in place.

    Returns the average log-likelihood (per frame, divided by d) of the
    parameters entering each iteration, as computed in its E-step.
    FactorizationError from a full covariance propagates to the caller.
    """
    cfg = resolve_config(config, n_iter=n_iter, n_chunks=n_chunks)
    chunks = partition(gmm, x, cfg.n_chunks)
    nx = sum(int(X.shape[0]) for _, X in chunks)
    if nx == 0 and cfg.n_iter > 0:
        raise ValueError("EM needs at least one data point")

    history: List[float] = []
    for it in range(cfg.n_iter):
        st = accumulate_chunks(gmm, chunks, order=2, executor=executor)
        ll = st.avll(gmm.d)
        _maximization_step(gmm, st, cfg)
        history.append(ll)

        logger.debug("EM iteration %d/%d, average log likelihood %.6f", it + 1, cfg.n_iter, ll)
        if cfg.logll:
            gmm.record(f"iteration {it + 1}, average log likelihood {ll:.6f}")

    if cfg.n_iter > 0:
        per_param = nx / gmm.nparams()
        gmm.record(
            f"EM with {nx} data points {cfg.n_iter} iterations avll {history[-1]:.6f}, "
            f"{per_param:.1f} data points per parameter"
        )
    return history
