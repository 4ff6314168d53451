# tests/test_stats.py
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import torch

from gmm_em import (
    GMM,
    DimensionMismatchError,
    SerialExecutor,
    Stats,
    avll,
    partition,
    post,
    stats,
)

COVARIANCE_TYPE = ["diag", "full"]


def _assert_stats_close(a, b):
    assert a.n_frames == b.n_frames
    assert a.llh == pytest.approx(b.llh, rel=1e-10)
    assert torch.allclose(a.n, b.n, rtol=1e-10, atol=1e-10)
    assert torch.allclose(a.f, b.f, rtol=1e-10, atol=1e-8)
    assert torch.allclose(a.s, b.s, rtol=1e-10, atol=1e-8)


def test_zero_order_stats_scenario():
    gmm = GMM.from_parameters([0.4, 0.6], [[0.0, 0.0], [2.0, 2.0]], [[1.0, 1.0], [1.0, 1.0]])
    X = np.random.RandomState(0).randn(10, 2)

    st = stats(gmm, X, order=0)

    assert st.n.shape == (2,)
    assert st.n.sum().item() == pytest.approx(10.0)
    assert st.f is None and st.s is None
    assert st.order == 0


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_stats_match_direct_computation(make_data, covariance_type):
    data = make_data(seed=12, n_samples=80, n_components=3, n_features=2, covariance_type=covariance_type)
    gmm = data.gmm()
    X = torch.from_numpy(data.X)
    resp = post(gmm, X)

    st = stats(gmm, X)

    assert torch.allclose(st.n, resp.sum(dim=0))
    assert torch.allclose(st.f, resp.T @ X)
    if covariance_type == "diag":
        assert st.s.shape == (3, 2)
        assert torch.allclose(st.s, resp.T @ (X * X))
    else:
        assert st.s.shape == (3, 2, 2)
        for k in range(3):
            expected = (resp[:, k, None, None] * X[:, :, None] * X[:, None, :]).sum(dim=0)
            assert torch.allclose(st.s[k], expected)
    assert st.avll(gmm.d) == pytest.approx(avll(gmm, X), rel=1e-10)


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
@pytest.mark.parametrize("n_chunks", [3, 7, 500])
def test_partition_invariance(make_data, covariance_type, n_chunks):
    data = make_data(seed=13, n_samples=300, n_components=4, n_features=3, covariance_type=covariance_type)
    gmm = data.gmm()

    reference = stats(gmm, data.X, n_chunks=1)
    _assert_stats_close(stats(gmm, data.X, n_chunks=n_chunks), reference)


@pytest.mark.parametrize("covariance_type", COVARIANCE_TYPE)
def test_thread_pool_matches_serial(make_data, covariance_type):
    data = make_data(seed=14, n_samples=500, n_components=4, n_features=3, covariance_type=covariance_type)
    gmm = data.gmm()

    serial = stats(gmm, data.X, executor=SerialExecutor(), n_chunks=1)
    with ThreadPoolExecutor(max_workers=4) as pool:
        parallel = stats(gmm, data.X, executor=pool, n_chunks=8)

    _assert_stats_close(parallel, serial)


def test_prechunked_data_matches_contiguous(make_data):
    data = make_data(seed=15, n_samples=120, n_components=2, n_features=2)
    gmm = data.gmm()
    parts = [data.X[:17], data.X[17:90], data.X[90:]]

    _assert_stats_close(stats(gmm, parts), stats(gmm, data.X))


def test_stats_addition_is_the_reduction(make_data):
    data = make_data(seed=16, n_samples=100, n_components=2, n_features=2)
    gmm = data.gmm()

    total = stats(gmm, data.X[:40]) + stats(gmm, data.X[40:])
    _assert_stats_close(total, stats(gmm, data.X))


def test_partition_layout():
    gmm = GMM(1, 2)
    X = np.arange(20.0).reshape(10, 2)
    chunks = partition(gmm, X, n_chunks=3)

    assert [offset for offset, _ in chunks] == [0, 4, 7]
    assert torch.equal(torch.cat([c for _, c in chunks]), torch.from_numpy(X))
    assert len(partition(gmm, X, n_chunks=50)) == 10


def test_stats_accept_reversed_rows(make_data):
    data = make_data(seed=19, n_samples=90, n_components=2, n_features=2)
    gmm = data.gmm()

    _assert_stats_close(stats(gmm, data.X[::-1], n_chunks=3), stats(gmm, data.X))


def test_stats_does_not_modify_model(make_data):
    gmm = make_data(seed=17, n_components=2).gmm()
    before = (gmm.weights.clone(), gmm.means.clone(), gmm.covars.clone(), len(gmm.history))

    stats(gmm, make_data(seed=18, n_components=2).X, n_chunks=4)

    assert torch.equal(before[0], gmm.weights)
    assert torch.equal(before[1], gmm.means)
    assert torch.equal(before[2], gmm.covars)
    assert before[3] == len(gmm.history)


def test_stats_errors():
    gmm = GMM(2, 3)
    with pytest.raises(ValueError):
        stats(gmm, np.zeros((4, 3)), order=3)
    with pytest.raises(DimensionMismatchError):
        stats(gmm, np.zeros((4, 2)))
    with pytest.raises(DimensionMismatchError):
        stats(gmm, [np.zeros((4, 3)), np.zeros((4, 2))])
    with pytest.raises(DimensionMismatchError):
        stats(gmm, [])


def test_serial_executor_propagates_exceptions():
    future = SerialExecutor().submit(lambda: 1 / 0)
    with pytest.raises(ZeroDivisionError):
        future.result()
    assert list(SerialExecutor().map(abs, [-1, 2, -3])) == [1, 2, 3]


def test_avll_of_empty_stats_fails():
    empty = Stats(n_frames=0, llh=0.0, n=torch.zeros(2, dtype=torch.float64))
    with pytest.raises(DimensionMismatchError):
        empty.avll(3)
