# gmm_em/_parallel.py
"""Map-over-chunks, reduce-by-sum execution.

The statistics engine only needs "map a pure function over data chunks on
some executor, then add the partial results". Any concurrent.futures.Executor
works (ThreadPoolExecutor, ProcessPoolExecutor, or a cluster executor with the
same interface); SerialExecutor runs everything in the calling thread.
"""

from __future__ import annotations

import functools
import operator
from concurrent.futures import Executor, Future
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import torch

from ._errors import DimensionMismatchError
from ._model import GMM, as_data

T = TypeVar("T")

# (row offset of the chunk within the full data, chunk)
Chunk = Tuple[int, torch.Tensor]


class SerialExecutor(Executor):
    """Executor running each call synchronously in the caller's thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


def partition(gmm: GMM, x, n_chunks: int = 1) -> List[Chunk]:
    """Split data into contiguous chunks.

    x is either one (nx, d) array/tensor, cut into n_chunks row blocks, or a
    list of (nx_i, d) arrays that are already chunked (n_chunks is then ignored).
    """
    if n_chunks < 1:
        raise ValueError(f"n_chunks must be positive, got {n_chunks}")
    if isinstance(x, (list, tuple)):
        if len(x) == 0:
            raise DimensionMismatchError("data", ("nx", gmm.d), (0,))
        chunks: List[Chunk] = []
        offset = 0
        for part in x:
            X = as_data(gmm, part)
            chunks.append((offset, X))
            offset += X.shape[0]
        return chunks

    X = as_data(gmm, x)
    chunks = []
    offset = 0
    for part in torch.tensor_split(X, min(n_chunks, max(X.shape[0], 1)), dim=0):
        chunks.append((offset, part))
        offset += part.shape[0]
    return chunks


def map_reduce(
    fn: Callable[[Chunk], T],
    chunks: Sequence[Chunk],
    executor: Optional[Executor] = None,
) -> T:
    """Apply fn to every chunk on executor and sum the partial results with +."""
    if executor is None:
        executor = SerialExecutor()
    partials: Iterable[T] = executor.map(fn, chunks)
    return functools.reduce(operator.add, partials)
