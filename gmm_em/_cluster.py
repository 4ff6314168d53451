# gmm_em/_cluster.py
"""Clustering collaborators for k-means seeded initialization.

A collaborator is any callable cluster(X, n) -> (centers (n, D), labels (N,)).
kmeans_cluster is k-means++ seeding followed by Lloyd iterations in torch;
sklearn_cluster delegates to scikit-learn's KMeans.
"""

from __future__ import annotations

from typing import Callable, Optional, Tuple

import numpy as np
import torch
from sklearn.cluster import KMeans

ClusterFn = Callable[[torch.Tensor, int], Tuple[torch.Tensor, torch.Tensor]]


@torch.no_grad()
def _kmeans_plus_plus_init_centroids(
    X: torch.Tensor,
    K: int,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    # First centroid uniformly
    i0 = int(torch.randint(0, N, (1,), generator=generator).item())
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total > 0:
            idx = int(torch.multinomial(closest_d2 / total, 1, generator=generator).item())
        else:
            # every point already coincides with a centroid
            idx = int(torch.randint(0, N, (1,), generator=generator).item())
        centroids[k] = X[idx]

        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = torch.minimum(closest_d2, d2_new)

    return centroids


@torch.no_grad()
def _kmeans_lloyd_with_init(
    X: torch.Tensor,
    centroids: torch.Tensor,
    n_iter: int = 10,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Run Lloyd iterations starting from provided centroids. Returns (centroids, labels)."""
    N, D = X.shape
    K, D2 = centroids.shape
    assert D == D2

    centroids = centroids.clone()
    for _ in range(n_iter):
        labels = torch.argmin(torch.cdist(X, centroids), dim=1)  # (N,)

        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)
        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        # Re-seed empty clusters from random data points
        empty_mask = counts == 0
        if empty_mask.any():
            random_idx = torch.randint(0, N, (int(empty_mask.sum().item()),), generator=generator).to(X.device)
            sums[empty_mask] = X[random_idx]
            counts[empty_mask] = 1.0

        new_centroids = sums / counts.unsqueeze(1)
        if torch.equal(new_centroids, centroids):
            break
        centroids = new_centroids

    labels = torch.argmin(torch.cdist(X, centroids), dim=1)
    return centroids, labels


def kmeans_cluster(
    X: torch.Tensor,
    n: int,
    n_iter: int = 50,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """k-means++ seeding plus n_iter Lloyd iterations."""
    if n > X.shape[0]:
        raise ValueError(f"cannot form {n} clusters from {X.shape[0]} points")
    centroids = _kmeans_plus_plus_init_centroids(X, n, generator=generator)
    return _kmeans_lloyd_with_init(X, centroids, n_iter=n_iter, generator=generator)


def sklearn_cluster(
    X: torch.Tensor,
    n: int,
    n_iter: int = 50,
    random_state: Optional[int] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """scikit-learn KMeans as the clustering collaborator."""
    X_np = X.detach().cpu().numpy()
    km = KMeans(n_clusters=n, n_init=1, max_iter=n_iter, random_state=random_state).fit(X_np)
    centers = torch.from_numpy(np.asarray(km.cluster_centers_)).to(device=X.device, dtype=X.dtype)
    labels = torch.from_numpy(np.asarray(km.labels_, dtype=np.int64)).to(X.device)
    return centers, labels
