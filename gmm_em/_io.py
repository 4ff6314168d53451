# gmm_em/_io.py
"""Save / load a GMM as a torch state dict."""

from __future__ import annotations

import os
import pickle
from typing import Union

import torch

from ._errors import DimensionMismatchError, GMMConstructionError, GMMValidationError
from ._model import GMM, HistoryEntry

PathLike = Union[str, "os.PathLike[str]"]

_FORMAT_VERSION = 1


def save(path: PathLike, gmm: GMM) -> None:
    """Write n, d, kind, weights, means, covariances and history to path."""
    state = {
        "version": _FORMAT_VERSION,
        "kind": gmm.kind.value,
        "n": gmm.n,
        "d": gmm.d,
        "weights": gmm.weights.detach().cpu(),
        "means": gmm.means.detach().cpu(),
        "covars": gmm.covars.detach().cpu(),
        "history": [(entry.timestamp, entry.event) for entry in gmm.history],
    }
    torch.save(state, path)


def load(path: PathLike, map_location="cpu") -> GMM:
    """Read a GMM written by save and check its invariants."""
    try:
        state = torch.load(path, map_location=map_location, weights_only=True)
        if not isinstance(state, dict):
            raise TypeError(f"expected a dict, found {type(state).__name__}")
        version = state["version"]
        kind, n, d = state["kind"], int(state["n"]), int(state["d"])
        weights, means, covars = state["weights"], state["means"], state["covars"]
        history = [HistoryEntry(float(t), str(e)) for t, e in state["history"]]
    except (pickle.UnpicklingError, EOFError, RuntimeError,
            IndexError, KeyError, TypeError, ValueError) as exc:
        raise GMMValidationError(f"{path!s} is not a saved GMM: {exc}") from exc
    if version != _FORMAT_VERSION:
        raise GMMValidationError(f"unsupported GMM file version {version!r}")

    try:
        gmm = GMM.from_parameters(weights, means, covars, kind, history=history)
    except (DimensionMismatchError, GMMConstructionError) as exc:
        raise GMMValidationError(f"{path!s} holds inconsistent parameters: {exc}") from exc
    if (gmm.n, gmm.d) != (n, d):
        raise GMMValidationError(f"stored n={n}, d={d} do not match parameters {gmm!r}")
    return gmm.validate()
