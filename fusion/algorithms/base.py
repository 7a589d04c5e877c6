"""
fusion.algorithms.base
======================
Interface every fusion method implements.

The orchestrator binds an algorithm to the image store once per task, sets
the anchor dates for each job, calls :meth:`FusionAlgorithm.train` once per
job (stateful methods only) and then :meth:`FusionAlgorithm.predict` for
each prediction date of the job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from ..config import ConfigurationError, DictReuse
from ..store import ImageStore


class FusionAlgorithm(ABC):
    """
    Base class of fusion methods.

    Class attributes
    ----------------
    name : str
        Registry name.
    min_pairs : int
        Number of pair dates a job needs at least (1 or 2).
    supports_single_pair : bool
        Whether the method can predict from one anchor date.
    stateful : bool
        Whether the method keeps state across jobs (e.g. a dictionary) and
        therefore needs :meth:`train`.
    """

    name: str = "base"
    min_pairs: int = 1
    supports_single_pair: bool = True
    stateful: bool = False

    def __init__(self, n_jobs: int = 1, **params: Any):
        self.n_jobs = n_jobs
        self.params: Dict[str, Any] = params
        self.store: Optional[ImageStore] = None
        self.high_tag: Optional[str] = None
        self.low_tag: Optional[str] = None
        self.anchors: Tuple[int, ...] = ()

    def bind(self, store: ImageStore, high_tag: str, low_tag: str) -> None:
        """Give the algorithm read access to the image store."""
        self.store = store
        self.high_tag = high_tag
        self.low_tag = low_tag

    def set_anchors(self, dates: Sequence[int]) -> None:
        dates = tuple(dates)
        if len(dates) not in (1, 2):
            raise ConfigurationError(f"A job has one or two anchor dates, got {dates}.")
        if len(dates) < self.min_pairs or (len(dates) == 1 and not self.supports_single_pair):
            raise ConfigurationError(
                f"{self.name} needs {self.min_pairs} anchor dates, got {dates}."
            )
        self.anchors = dates

    def train(self, anchors: Sequence[int], mask: Optional[np.ndarray] = None) -> None:
        """Learn from the anchor pairs.  Stateless methods do nothing."""

    @abstractmethod
    def predict(self, date: int, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """Predict the high resolution image at *date*, ``(C, H, W)``."""

    # ----- persisted state (stateful methods) -----
    def load_model(self, path: str | Path, reuse: DictReuse = DictReuse.IMPROVE) -> None:
        raise NotImplementedError(f"{self.name} has no model to load.")

    def save_model(self, path: str | Path) -> None:
        raise NotImplementedError(f"{self.name} has no model to save.")

    # ----- helpers for subclasses -----
    def high(self, date: int) -> np.ndarray:
        return self.store.get(self.high_tag, date)

    def low(self, date: int) -> np.ndarray:
        return self.store.get(self.low_tag, date)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_jobs={self.n_jobs}, params={self.params})"


def cast_to(values: np.ndarray, dtype: np.dtype | str) -> np.ndarray:
    """Round and saturate *values* to the range of an integer *dtype*."""
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        values = np.clip(np.rint(values), info.min, info.max)
    return values.astype(dtype)
