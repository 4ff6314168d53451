# gmm_em/_config.py
"""Training configuration shared by EM, splitting and the initializers."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from ._errors import GMMConstructionError


@dataclass(frozen=True)
class TrainingConfig:
    """Knobs for EM training and split initialization.

    - n_iter:        EM iterations per call (and per split round).
    - n_final:       EM iterations after the last split (defaults to n_iter).
    - var_floor:     lower bound on every variance / covariance eigenvalue.
    - min_occupancy: components with less responsibility mass keep their
                     mean and covariance during an M-step.
    - logll:         record the per-iteration average log-likelihood in history.
    - minweight:     split pruning threshold.
    - covfactor:     split offset, in standard deviations.
    - kmeans_iter:   Lloyd iterations for the built-in k-means collaborator.
    - n_chunks:      data partitions for the statistics map-reduce.
    """

    n_iter: int = 10
    n_final: Optional[int] = None
    var_floor: float = 1e-3
    min_occupancy: float = 1e-10
    logll: bool = True
    minweight: float = 1e-5
    covfactor: float = 0.2
    kmeans_iter: int = 50
    n_chunks: int = 1

    def __post_init__(self) -> None:
        if self.n_iter < 0:
            raise GMMConstructionError("n_iter must be non-negative")
        if self.n_final is not None and self.n_final < 0:
            raise GMMConstructionError("n_final must be non-negative")
        if self.var_floor <= 0:
            raise GMMConstructionError("var_floor must be positive")
        if self.min_occupancy < 0:
            raise GMMConstructionError("min_occupancy must be non-negative")
        if not 0 <= self.minweight < 1:
            raise GMMConstructionError("minweight must be in [0, 1)")
        if self.covfactor <= 0:
            raise GMMConstructionError("covfactor must be positive")
        if self.kmeans_iter <= 0:
            raise GMMConstructionError("kmeans_iter must be positive")
        if self.n_chunks <= 0:
            raise GMMConstructionError("n_chunks must be positive")

    @property
    def final_iter(self) -> int:
        return self.n_iter if self.n_final is None else self.n_final

    def updated(self, **overrides) -> "TrainingConfig":
        """Copy with the non-None overrides applied."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides) if overrides else self


def resolve_config(config: Optional[TrainingConfig] = None, **overrides) -> TrainingConfig:
    return (config if config is not None else TrainingConfig()).updated(**overrides)
