# tests/conftest.py
import numpy as np
import pytest
import torch

from gmm_em import GMM

torch.set_default_dtype(torch.float64)

COVARIANCE_TYPE = ["diag", "full"]


class RandomData:
    """Random GMM parameters and samples drawn from them (diag or full storage)."""

    def __init__(self, rng, n_samples=200, n_components=2, n_features=2, covariance_type="diag", spread=50.0):
        self.n_samples = int(n_samples)
        self.n_components = int(n_components)
        self.n_features = int(n_features)
        self.covariance_type = covariance_type

        # weights on simplex, bounded away from zero
        w = 0.5 + rng.rand(self.n_components)
        self.weights = w / w.sum()

        # means spread out
        self.means = rng.rand(self.n_components, self.n_features) * spread

        self.cov = self._make_covariance(rng)
        self.X, self.labels = self._generate_samples(rng)

    def _make_covariance(self, rng):
        K, D = self.n_components, self.n_features

        if self.covariance_type == "diag":
            # variance range ~ [0.25, 2.25)
            return (0.5 + rng.rand(K, D)) ** 2

        if self.covariance_type == "full":
            covs = []
            for _ in range(K):
                A = rng.randn(D, D)
                C = A @ A.T
                C /= (np.trace(C) / D)
                C += 0.1 * np.eye(D)
                covs.append(C)
            return np.stack(covs, axis=0)

        raise ValueError(self.covariance_type)

    def _generate_samples(self, rng):
        K, D = self.n_components, self.n_features
        labels = rng.choice(K, size=self.n_samples, p=self.weights)
        z = rng.randn(self.n_samples, D)
        if self.covariance_type == "diag":
            X = self.means[labels] + z * np.sqrt(self.cov[labels])
        else:
            L = np.linalg.cholesky(self.cov)
            X = self.means[labels] + np.einsum("nde,ne->nd", L[labels], z)
        return X, labels

    def gmm(self):
        return GMM.from_parameters(self.weights, self.means, self.cov, self.covariance_type)


@pytest.fixture
def make_data():
    def _make(seed=0, **kwargs):
        return RandomData(np.random.RandomState(seed), **kwargs)
    return _make
