"""
fusion.pixelstate
=================
Per-pixel, per-channel classification of what happened to a location.

====================  =====  ==========================================
State                 Value  Meaning
====================  =====  ==========================================
NODATA                0      invalid before and after, never touched
NONINTERPOLATED       64     needed filling, but no value was found
CLEAR                 128    valid and left untouched
INTERPOLATED          192    filled (alias PREDICTED)
====================  =====  ==========================================

The values are chosen so that a state image written as ``uint8`` is
readable as a grey-scale picture.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, Optional

import numpy as np


class PixelState(IntEnum):
    NODATA = 0
    NONINTERPOLATED = 64
    CLEAR = 128
    INTERPOLATED = 192
    PREDICTED = 192


def fill_attempted(
    was_valid: np.ndarray,
    needs_filling: np.ndarray,
    prefer_fill_over_nodata: bool = True,
) -> np.ndarray:
    """
    Locations where filling is attempted.

    A location marked for filling is attempted if it is valid, or if it is
    invalid and *prefer_fill_over_nodata* is set.
    """
    was_valid = np.asarray(was_valid, dtype=bool)
    needs_filling = np.asarray(needs_filling, dtype=bool)
    if prefer_fill_over_nodata:
        return needs_filling.copy()
    return needs_filling & was_valid


def classify_pixel_states(
    was_valid: np.ndarray,
    needs_filling: np.ndarray,
    found: Optional[np.ndarray] = None,
    prefer_fill_over_nodata: bool = True,
) -> np.ndarray:
    """
    Classify every location into a :class:`PixelState`.

    Parameters
    ----------
    was_valid : bool array
        Validity before filling (mask true).
    needs_filling : bool array
        Secondary classification, e.g. a cloud flag.
    found : bool array, optional
        Where a replacement value was found.  ``None`` classifies the state
        before any attempt, so attempted locations count as not filled.
    prefer_fill_over_nodata : bool
        Whether invalid locations marked for filling are filled (True) or
        stay ``NODATA`` (False).

    Returns
    -------
    np.ndarray of uint8, broadcast shape of the inputs.
    """
    was_valid, needs_filling = np.broadcast_arrays(
        np.asarray(was_valid, dtype=bool), np.asarray(needs_filling, dtype=bool)
    )
    attempted = fill_attempted(was_valid, needs_filling, prefer_fill_over_nodata)
    if found is None:
        found = np.zeros(was_valid.shape, dtype=bool)
    else:
        found = np.broadcast_to(np.asarray(found, dtype=bool), was_valid.shape)

    states = np.full(was_valid.shape, PixelState.NODATA, dtype=np.uint8)
    states[was_valid & ~needs_filling] = PixelState.CLEAR
    states[attempted & ~found] = PixelState.NONINTERPOLATED
    states[attempted & found] = PixelState.INTERPOLATED
    return states


def count_states(states: np.ndarray) -> Dict[str, int]:
    """Number of locations per state, keyed by lower-case state name."""
    states = np.asarray(states)
    return {
        name: int(np.count_nonzero(states == value))
        for name, value in (
            ("nodata", PixelState.NODATA),
            ("noninterpolated", PixelState.NONINTERPOLATED),
            ("clear", PixelState.CLEAR),
            ("interpolated", PixelState.INTERPOLATED),
        )
    }
