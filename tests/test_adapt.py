# tests/test_adapt.py
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import torch

from gmm_em import (
    GMM,
    CSstats,
    DimensionMismatchError,
    csstats,
    dotscore,
    map_adapt,
    post,
    stats,
)

COVARIANCE_TYPE = ["diag", "full"]


@pytest.mark.parametrize("order", [1, 2])
def test_csstats_diag_matches_direct_computation(make_data, order):
    data = make_data(seed=31, n_samples=90, n_components=3, n_features=2, covariance_type="diag")
    ubm = data.gmm()
    X = torch.from_numpy(data.X)
    resp = post(ubm, X)

    cs = csstats(ubm, X, order=order)

    sigma = torch.sqrt(ubm.covars)
    centered = (X[:, None, :] - ubm.means[None]) / sigma[None]  # (N,K,D)
    assert torch.allclose(cs.n, resp.sum(dim=0))
    assert torch.allclose(cs.f, (resp[:, :, None] * centered).sum(dim=0))
    if order == 2:
        assert torch.allclose(cs.s, (resp[:, :, None] * centered ** 2).sum(dim=0))
    else:
        assert cs.s is None


def test_csstats_full_whitens_with_cholesky(make_data):
    data = make_data(seed=32, n_samples=90, n_components=2, n_features=3, covariance_type="full")
    ubm = data.gmm()
    X = torch.from_numpy(data.X)
    resp = post(ubm, X)

    cs = csstats(ubm, X, order=2)

    for k in range(2):
        L = torch.linalg.cholesky(ubm.covars[k])
        y = torch.linalg.solve_triangular(L, (X - ubm.means[k]).T, upper=False).T  # (N,D)
        assert torch.allclose(cs.f[k], (resp[:, k, None] * y).sum(dim=0))
        assert torch.allclose(cs.s[k], (resp[:, k, None] * y ** 2).sum(dim=0))


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_csstats_partition_invariance_and_additivity(make_data, covariance_type):
    data = make_data(seed=33, n_samples=200, n_components=3, n_features=2, covariance_type=covariance_type)
    ubm = data.gmm()

    whole = csstats(ubm, data.X, order=2)
    with ThreadPoolExecutor(max_workers=2) as pool:
        chunked = csstats(ubm, data.X, order=2, executor=pool, n_chunks=6)
    summed = CSstats.from_data(ubm, data.X[:70], order=2) + CSstats.from_data(ubm, data.X[70:], order=2)

    for other in (chunked, summed):
        assert torch.allclose(other.n, whole.n)
        assert torch.allclose(other.f, whole.f, atol=1e-8)
        assert torch.allclose(other.s, whole.s, atol=1e-8)


def test_csstats_rejects_bad_order():
    with pytest.raises(ValueError):
        csstats(GMM(2, 2), np.zeros((3, 2)), order=0)


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_map_relevance_limits(make_data, covariance_type):
    data = make_data(seed=34, n_samples=150, n_components=2, n_features=2, covariance_type=covariance_type)
    ubm = data.gmm()
    shifted = data.X + 0.5
    st = stats(ubm, shifted, order=1)
    observed = st.f / st.n[:, None]

    stiff = map_adapt(ubm, shifted, r=1e12)
    assert torch.allclose(stiff.means, ubm.means, atol=1e-6)

    loose = map_adapt(ubm, shifted, r=1e-12)
    assert torch.allclose(loose.means, observed, atol=1e-8)

    alpha = st.n / (st.n + 16.0)
    default = map_adapt(ubm, shifted)
    expected = alpha[:, None] * observed + (1 - alpha[:, None]) * ubm.means
    assert torch.allclose(default.means, expected)


def test_map_leaves_ubm_untouched_unless_inplace(make_data):
    data = make_data(seed=35, n_samples=100, n_components=2, n_features=2)
    ubm = data.gmm()
    means = ubm.means.clone()

    adapted = map_adapt(ubm, data.X + 1.0, r=4.0)
    assert adapted is not ubm
    assert torch.equal(ubm.means, means)
    assert adapted.history[-1].event.startswith("MAP adapted with r=4.0")
    assert torch.equal(adapted.weights, ubm.weights)
    assert torch.equal(adapted.covars, ubm.covars)

    same = map_adapt(ubm, data.X + 1.0, r=4.0, inplace=True)
    assert same is ubm
    assert torch.allclose(ubm.means, adapted.means)


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_map_weights_and_covars_keep_invariants(make_data, covariance_type):
    data = make_data(seed=36, n_samples=200, n_components=3, n_features=2, covariance_type=covariance_type)
    ubm = data.gmm()

    adapted = map_adapt(ubm, data.X[:50] * 1.2, r=2.0, weights=True, covars=True, var_floor=1e-3)

    assert adapted.weights.sum().item() == pytest.approx(1.0)
    assert not torch.allclose(adapted.weights, ubm.weights)
    adapted.validate(var_floor=1e-3)


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_map_unseen_component_keeps_ubm_parameters(covariance_type):
    cov = np.stack([np.eye(2)] * 2) if covariance_type == "full" else np.ones((2, 2))
    ubm = GMM.from_parameters([0.5, 0.5], [[0.0, 0.0], [1e3, 1e3]], cov, covariance_type)
    X = np.random.RandomState(0).randn(30, 2)

    adapted = map_adapt(ubm, X, r=1.0, weights=True, covars=True)

    assert torch.equal(adapted.means[1], ubm.means[1])
    assert torch.equal(adapted.covars[1], ubm.covars[1])
    assert torch.isfinite(adapted.means).all()


def test_map_rejects_negative_relevance():
    with pytest.raises(ValueError):
        map_adapt(GMM(1, 1), np.zeros((3, 1)), r=-1.0)


def test_dotscore_closed_form():
    x = CSstats(n=torch.tensor([2.0, 0.0]), f=torch.tensor([[1.0, 2.0], [3.0, 4.0]]))
    y = CSstats(n=torch.tensor([5.0, 1.0]), f=torch.tensor([[0.5, -1.0], [1.0, 1.0]]))

    expected = (1.0 * 0.5 + 2.0 * -1.0) / 3.0 + (3.0 * 1.0 + 4.0 * 1.0) / 1.0
    assert dotscore(x, y, r=1.0) == pytest.approx(expected)


def test_dotscore_prefers_matching_speaker():
    rng = np.random.RandomState(37)
    ubm = GMM.from_parameters([0.5, 0.5], [[-5.0] * 3, [5.0] * 3], np.ones((2, 3)))
    enroll = csstats(ubm, rng.randn(300, 3) + 6.0)
    same = csstats(ubm, rng.randn(300, 3) + 6.0)
    other = csstats(ubm, rng.randn(300, 3) - 6.0)

    assert dotscore(enroll, same) > dotscore(enroll, other)


def test_dotscore_shape_mismatch():
    x = CSstats(n=torch.ones(2), f=torch.ones(2, 3))
    y = CSstats(n=torch.ones(3), f=torch.ones(3, 3))
    with pytest.raises(DimensionMismatchError):
        dotscore(x, y)
    with pytest.raises(DimensionMismatchError):
        CSstats(n=torch.ones(2), f=torch.ones(3, 3))
