""" EM training and Baum-Welch statistics for Gaussian mixture models, in PyTorch. """

import logging

from ._errors import (
    DimensionMismatchError,
    FactorizationError,
    GMMConstructionError,
    GMMValidationError,
    ZeroDensityWarning,
)
from ._config import TrainingConfig
from ._kernels import log_normalize
from ._model import (
    GMM,
    CovarianceKind,
    DiagCovariance,
    FullCovariance,
    HistoryEntry,
)
from ._density import avll, gmmposterior, llpg, post
from ._parallel import SerialExecutor, partition
from ._stats import Stats, stats
from ._em import em
from ._split import split
from ._cluster import kmeans_cluster, sklearn_cluster
from ._init import gmm_from_data, kmeans_init, split_init, train_gmm
from ._adapt import CSstats, csstats, dotscore, map_adapt
from ._io import load, save

__version__ = "0.1.0"

__all__ = [
    "CSstats",
    "CovarianceKind",
    "DiagCovariance",
    "DimensionMismatchError",
    "FactorizationError",
    "FullCovariance",
    "GMM",
    "GMMConstructionError",
    "GMMValidationError",
    "HistoryEntry",
    "SerialExecutor",
    "Stats",
    "TrainingConfig",
    "ZeroDensityWarning",
    "avll",
    "csstats",
    "dotscore",
    "em",
    "gmm_from_data",
    "gmmposterior",
    "kmeans_cluster",
    "kmeans_init",
    "llpg",
    "load",
    "log_normalize",
    "map_adapt",
    "partition",
    "post",
    "save",
    "set_log_level",
    "sklearn_cluster",
    "split",
    "split_init",
    "stats",
    "train_gmm",
]

logger = logging.getLogger(__name__)
logger.setLevel(logging.WARNING)

handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter(
    "%(asctime)s [%(levelname)s] %(message)s"))
logger.addHandler(handler)


def set_log_level(level) -> None:
    """Set the level of the package logger (e.g. logging.DEBUG to trace EM)."""
    logging.getLogger(__name__).setLevel(level)


del handler, logger
