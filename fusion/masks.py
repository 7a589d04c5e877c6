"""
fusion.masks
============
Validity mask composition.

A mask is a boolean array of shape ``(C, H, W)`` or ``(1, H, W)`` where
``True`` marks a valid location.  ``None`` stands for "no restriction" and
is treated exactly like an all-true mask everywhere in this module.

Public API
----------
and_masks(*masks)                         → AND of masks (None = all valid)
combine_ranges(options, role)             → ordered valid/invalid ranges → IntervalSet | None
resolve_valid_sets(options)               → RoleValidSets(high, low)
compose_mask(base, image, valid_set, ...) → base AND value test (AND nodata exclusion)
extract_bits(array, bits)                 → selected bits shifted to the LSB
quality_to_mask(array, bits, options)     → boolean layer from a quality layer
combine_mask_images(masks, channels, hw)  → AND of uint8 mask files
find_nodata_value(image, mask)            → unused sentinel value or None
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import RangeKind
from .intervals import Interval, IntervalSet


class MaskError(ValueError):
    """Mask image with unsupported type, channel count or size."""


RangeOptions = Sequence[Tuple[RangeKind, IntervalSet]]


# ======================================================================== #
#  1.  Combining masks                                                      #
# ======================================================================== #

def and_masks(*masks: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """
    Logical AND of any number of masks.

    ``None`` entries are skipped; single-channel masks are broadcast against
    multi-channel ones.  Returns ``None`` if every input is ``None``.
    """
    present = [np.asarray(m, dtype=bool) for m in masks if m is not None]
    if not present:
        return None
    out = present[0]
    for m in present[1:]:
        if out.shape[1:] != m.shape[1:]:
            raise MaskError(
                f"Mask sizes differ: {out.shape[1:]} vs {m.shape[1:]}."
            )
        if out.shape[0] != m.shape[0] and 1 not in (out.shape[0], m.shape[0]):
            raise MaskError(
                f"Cannot combine masks with {out.shape[0]} and {m.shape[0]} channels."
            )
        out = np.logical_and(out, m)
    return out


def expand_mask(mask: Optional[np.ndarray], shape: Tuple[int, ...]) -> np.ndarray:
    """Mask as a full ``(C, H, W)`` boolean array (all true for ``None``)."""
    if mask is None:
        return np.ones(shape, dtype=bool)
    return np.broadcast_to(np.asarray(mask, dtype=bool), shape)


# ======================================================================== #
#  2.  Range options                                                        #
# ======================================================================== #

def combine_ranges(options: RangeOptions, role: Optional[str] = None) -> Optional[IntervalSet]:
    """
    Apply valid/invalid range options in the order given.

    Only options affecting *role* (``"high"``, ``"low"`` or ``None`` for
    all) are used.  If the first relevant option is an invalid range the
    result starts from all reals, otherwise from the empty set.  Returns
    ``None`` if no option affects the role.
    """
    relevant = [(k, s) for k, s in options if role is None or k.applies_to(role)]
    if not relevant:
        return None

    first_kind = relevant[0][0]
    out = IntervalSet() if first_kind.is_valid else IntervalSet.everything()
    for kind, iset in relevant:
        if kind.is_valid:
            out += iset
        else:
            out -= iset
    return out


@dataclass(frozen=True)
class RoleValidSets:
    """Valid value sets for the high and low resolution images (None = any)."""
    high: Optional[IntervalSet] = None
    low: Optional[IntervalSet] = None

    def for_role(self, role: str) -> Optional[IntervalSet]:
        return self.high if role == "high" else self.low


def resolve_valid_sets(options: RangeOptions) -> RoleValidSets:
    """Combine range options separately for the high and the low role."""
    sets = {}
    for role in ("high", "low"):
        iset = combine_ranges(options, role)
        if iset is not None and iset.empty:
            warnings.warn(
                f"The valid ranges for the {role} resolution images are empty, "
                f"so every {role} resolution pixel will be masked out."
            )
        sets[role] = iset
    return RoleValidSets(**sets)


# ======================================================================== #
#  3.  Mask composition                                                     #
# ======================================================================== #

def compose_mask(
    base_mask: Optional[np.ndarray],
    image: np.ndarray,
    valid_set: Optional[IntervalSet] = None,
    nodata: Optional[float] = None,
    use_nodata: bool = True,
) -> Optional[np.ndarray]:
    """
    AND *base_mask* with a per-pixel test of *image* against *valid_set*.

    If *use_nodata* is set and *nodata* is given, ``[nodata, nodata]`` is
    removed from the valid set first (a NaN nodata value excludes NaNs).
    The value test is skipped when the effective set covers all reals.

    With a single-channel *base_mask* only channel 0 of *image* is tested
    and the result stays single-channel; otherwise the test is per channel.

    Returns ``None`` if nothing restricts validity.
    """
    image = np.asarray(image)
    iset = valid_set
    nan_nodata = False
    if use_nodata and nodata is not None:
        if np.isnan(nodata):
            nan_nodata = True
        else:
            iset = iset.copy() if iset is not None else IntervalSet.everything()
            iset -= Interval.point(nodata)

    test = None
    if iset is not None and not iset.is_everything():
        test = iset.mask(image)
    if nan_nodata and np.issubdtype(image.dtype, np.floating):
        test = and_masks(test, ~np.isnan(image))

    if test is None:
        return None if base_mask is None else np.asarray(base_mask, dtype=bool)

    if base_mask is not None and base_mask.shape[0] == 1 and test.shape[0] > 1:
        test = test[:1]
    return and_masks(base_mask, test)


# ======================================================================== #
#  4.  Mask files and quality layers                                        #
# ======================================================================== #

def extract_bits(values: np.ndarray, bits: Sequence[int]) -> np.ndarray:
    """
    Extract the given bit positions and shift them to the lowest positions.

    Bits are used in ascending order, e.g. bits ``[3, 5]`` of ``0b101000``
    give ``0b11``.
    """
    bits = sorted(bits)
    if bits and bits[0] < 0:
        raise MaskError(f"Cannot extract negative bit position {bits[0]}.")
    values = np.asarray(values).astype(np.int64)
    out = np.zeros(values.shape, dtype=np.int64)
    for i, b in enumerate(bits):
        out |= ((values >> b) & 1) << i
    return out


def quality_to_mask(
    values: np.ndarray,
    bits: Optional[Sequence[int]] = None,
    options: Optional[RangeOptions] = None,
) -> np.ndarray:
    """
    Convert an integer quality layer into a boolean layer.

    After optional bit extraction the values are tested against the ordered
    range *options*.  Without options every non-zero value is true.
    """
    values = np.asarray(values)
    if not np.issubdtype(values.dtype, np.integer):
        raise MaskError(
            f"Quality layers represent bit masks, so only integer types are "
            f"supported, got {values.dtype}."
        )
    if bits:
        values = extract_bits(values, bits)

    iset = combine_ranges(options) if options else None
    if iset is None:
        iset = IntervalSet.everything() - Interval.point(0)
    return iset.mask(values)


def combine_mask_images(
    masks: Sequence[np.ndarray],
    channels: int,
    size: Tuple[int, int],
) -> Optional[np.ndarray]:
    """
    AND all mask images into one boolean mask.

    Each mask must be boolean or ``uint8`` (non-zero = valid), have 1 or
    *channels* channels and the spatial *size* ``(height, width)``.
    """
    checked: List[np.ndarray] = []
    for i, m in enumerate(masks):
        m = np.asarray(m)
        if m.ndim == 2:
            m = m[np.newaxis]
        if m.dtype != np.bool_ and m.dtype != np.uint8:
            raise MaskError(
                f"Mask image {i} has type {m.dtype}. Mask images must be uint8 "
                f"or use bits / ranges to be converted from a quality layer."
            )
        if m.shape[0] not in (1, channels):
            raise MaskError(
                f"Mask image {i} has {m.shape[0]} channels, the images have "
                f"{channels}. Use a single-channel mask or one with {channels}."
            )
        if tuple(m.shape[1:]) != tuple(size):
            raise MaskError(
                f"Mask image {i} has size {tuple(m.shape[1:])}, the images "
                f"have {tuple(size)}."
            )
        checked.append(m != 0)
    return and_masks(*checked)


# ---------------------------------------------------------------------------
# Quality layer presets (true = location to interpolate)
# ---------------------------------------------------------------------------
QUALITY_PRESETS: Dict[str, dict] = {
    "modis": {
        "bits": [0, 1, 2],
        "options": [
            (RangeKind.VALID, IntervalSet([Interval.closed(1, 7)])),
            (RangeKind.INVALID, IntervalSet([Interval.point(3)])),
        ],
    },
    "landsat": {
        "bits": [3, 5, 7],
        "options": [(RangeKind.VALID, IntervalSet([Interval.closed(1, 7)]))],
    },
    "pfmask": {
        "bits": None,
        "options": [(RangeKind.VALID, IntervalSet([Interval.closed(2, 3)]))],
    },
    "mfmask": {
        "bits": None,
        "options": [
            (RangeKind.VALID, IntervalSet([Interval.point(2), Interval.point(4)])),
        ],
    },
}


# ======================================================================== #
#  5.  Nodata synthesis                                                     #
# ======================================================================== #

_PREFERRED_NODATA: Dict[str, int] = {
    "int8": -99,
    "int16": -9999,
    "int32": -999999,
    "int64": -999999,
}


def _smallest_unused(used: np.ndarray, lo: int, hi: int) -> Optional[int]:
    candidate = lo
    for v in used:
        v = int(v)
        if v > candidate:
            break
        if v == candidate:
            candidate += 1
    return candidate if candidate <= hi else None


def _largest_unused(used: np.ndarray, lo: int, hi: int) -> Optional[int]:
    candidate = hi
    for v in used[::-1]:
        v = int(v)
        if v < candidate:
            break
        if v == candidate:
            candidate -= 1
    return candidate if candidate >= lo else None


def find_nodata_value(
    image: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Optional[float]:
    """
    Find a value that does not occur at the valid locations of *image*.

    Floating point images always get ``-9999``.  Signed integer types
    prefer ``-99`` (int8), ``-9999`` (int16) or ``-999999`` (32/64 bit) when
    unused, otherwise the smallest unused value.  Unsigned types get the
    largest unused value.  Returns ``None`` if every value occurs.
    """
    image = np.asarray(image)
    if np.issubdtype(image.dtype, np.floating):
        return -9999.0
    if not np.issubdtype(image.dtype, np.integer):
        return None

    if mask is not None:
        values = image[expand_mask(mask, image.shape)]
    else:
        values = image.ravel()
    used = np.unique(values)
    info = np.iinfo(image.dtype)

    if np.issubdtype(image.dtype, np.signedinteger):
        preferred = _PREFERRED_NODATA.get(image.dtype.name)
        if preferred is not None and not np.isin(preferred, used):
            return preferred
        return _smallest_unused(used, int(info.min), int(info.max))
    return _largest_unused(used, int(info.min), int(info.max))
