"""
fusion.algorithms.difference
============================
Temporal difference fusion, the built-in reference method.

Single anchor::

    H_t = H_1 + (L_t - L_1)

Two anchors: both single-anchor estimates are blended with weights
inversely proportional to their temporal distance to ``t``.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .base import FusionAlgorithm, cast_to


class TemporalDifferenceFusor(FusionAlgorithm):
    """Deterministic, stateless fusion by adding the low resolution change."""

    name = "difference"
    min_pairs = 1
    supports_single_pair = True
    stateful = False

    def _estimate(self, anchor: int, date: int) -> np.ndarray:
        h1 = self.high(anchor).astype(np.float64)
        l1 = self.low(anchor).astype(np.float64)
        lt = self.low(date).astype(np.float64)
        return h1 + (lt - l1)

    def predict(self, date: int, mask: Optional[np.ndarray] = None) -> np.ndarray:
        if not self.anchors:
            raise RuntimeError("set_anchors() must be called before predict().")
        dtype = self.high(self.anchors[0]).dtype

        if len(self.anchors) == 1:
            return cast_to(self._estimate(self.anchors[0], date), dtype)

        d1, d3 = self.anchors
        dist1, dist3 = abs(date - d1), abs(date - d3)
        if dist1 == 0:
            return cast_to(self._estimate(d1, date), dtype)
        if dist3 == 0:
            return cast_to(self._estimate(d3, date), dtype)

        w1, w3 = 1.0 / dist1, 1.0 / dist3
        blended = (w1 * self._estimate(d1, date) + w3 * self._estimate(d3, date)) / (w1 + w3)
        return cast_to(blended, dtype)
