"""
fusion.intervals
================
Numeric interval sets used to describe valid / interpolate value ranges.

An :class:`IntervalSet` is an ordered collection of disjoint intervals.
Each interval is open or closed independently on either side and may use
``±inf`` as a bound.  Unions and differences are applied strictly in call
order, so ``valid − invalid`` and ``invalid − valid`` give different sets.

Public API
----------
Interval(lower, upper, left_closed, right_closed)
Interval.closed / open / left_open / right_open / point
IntervalSet()                    → empty set
IntervalSet.everything()         → (-inf, inf)
s += interval  |  s.union_with() → union, in place
s -= interval  |  s.subtract()   → difference, in place
s.contains(v)  |  v in s         → membership, O(log n)
s.discretize(lo, hi)             → closed integer set inside [lo, hi]
s.mask(array)                    → element-wise membership as bool array
"""

from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

import numpy as np


INF = float("inf")


# ======================================================================== #
#  1.  Single interval                                                      #
# ======================================================================== #

@dataclass(frozen=True)
class Interval:
    """One interval with independently open or closed bounds."""

    lower: float
    upper: float
    left_closed: bool = True
    right_closed: bool = True

    # ----- constructors -----
    @classmethod
    def closed(cls, lower: float, upper: float) -> "Interval":
        return cls(float(lower), float(upper), True, True)

    @classmethod
    def open(cls, lower: float, upper: float) -> "Interval":
        return cls(float(lower), float(upper), False, False)

    @classmethod
    def left_open(cls, lower: float, upper: float) -> "Interval":
        return cls(float(lower), float(upper), False, True)

    @classmethod
    def right_open(cls, lower: float, upper: float) -> "Interval":
        return cls(float(lower), float(upper), True, False)

    @classmethod
    def point(cls, value: float) -> "Interval":
        return cls.closed(value, value)

    # ----- queries -----
    @property
    def empty(self) -> bool:
        if math.isnan(self.lower) or math.isnan(self.upper):
            return True
        if self.lower > self.upper:
            return True
        if self.lower == self.upper:
            return not (self.left_closed and self.right_closed)
        return False

    def contains(self, value: float) -> bool:
        if self.empty or math.isnan(value):
            return False
        if value < self.lower or value > self.upper:
            return False
        if value == self.lower and not self.left_closed:
            return False
        if value == self.upper and not self.right_closed:
            return False
        return True

    def __contains__(self, value: float) -> bool:
        return self.contains(value)

    def intersect(self, other: "Interval") -> "Interval":
        """Intersection of two intervals (may be empty)."""
        if self.lower > other.lower:
            lower, left_closed = self.lower, self.left_closed
        elif self.lower < other.lower:
            lower, left_closed = other.lower, other.left_closed
        else:
            lower, left_closed = self.lower, self.left_closed and other.left_closed

        if self.upper < other.upper:
            upper, right_closed = self.upper, self.right_closed
        elif self.upper > other.upper:
            upper, right_closed = other.upper, other.right_closed
        else:
            upper, right_closed = self.upper, self.right_closed and other.right_closed

        return Interval(lower, upper, left_closed, right_closed)

    def __str__(self) -> str:
        left = "[" if self.left_closed else "("
        right = "]" if self.right_closed else ")"
        return f"{left}{_fmt(self.lower)}, {_fmt(self.upper)}{right}"


def _fmt(v: float) -> str:
    if math.isinf(v):
        return "inf" if v > 0 else "-inf"
    if float(v).is_integer():
        return str(int(v))
    return repr(v)


def _touches(left: Interval, right: Interval) -> bool:
    """
    True if *right* (whose lower bound is >= left.lower) overlaps or is
    directly adjacent to *left*, so that both can be merged into one.
    """
    if right.lower < left.upper:
        return True
    if right.lower == left.upper:
        return left.right_closed or right.left_closed
    return False


# ======================================================================== #
#  2.  Interval set                                                         #
# ======================================================================== #

class IntervalSet:
    """
    Ordered union of disjoint :class:`Interval` objects.

    Examples
    --------
    >>> s = IntervalSet()
    >>> s += Interval.closed(0, 10)
    >>> s -= Interval.closed(3, 5)
    >>> 2 in s, 4 in s, 5.5 in s
    (True, False, True)
    """

    def __init__(self, intervals: Optional[Iterable[Interval]] = None):
        self._intervals: List[Interval] = []
        self._lowers: List[float] = []
        for iv in intervals or ():
            self.union_with(iv)

    @classmethod
    def everything(cls) -> "IntervalSet":
        return cls([Interval.closed(-INF, INF)])

    # ----- algebra -----
    def union_with(self, other: "Interval | IntervalSet") -> "IntervalSet":
        """Add *other* to the set (in place) and return ``self``."""
        if isinstance(other, IntervalSet):
            for iv in other:
                self.union_with(iv)
            return self
        if other.empty:
            return self

        pending = sorted(
            self._intervals + [other],
            key=lambda iv: (iv.lower, not iv.left_closed),
        )
        merged: List[Interval] = [pending[0]]
        for iv in pending[1:]:
            cur = merged[-1]
            if not _touches(cur, iv):
                merged.append(iv)
                continue
            if iv.upper > cur.upper:
                upper, right_closed = iv.upper, iv.right_closed
            elif iv.upper < cur.upper:
                upper, right_closed = cur.upper, cur.right_closed
            else:
                upper, right_closed = cur.upper, cur.right_closed or iv.right_closed
            merged[-1] = Interval(cur.lower, upper, cur.left_closed, right_closed)

        self._set(merged)
        return self

    def subtract(self, other: "Interval | IntervalSet") -> "IntervalSet":
        """Remove *other* from the set (in place) and return ``self``."""
        if isinstance(other, IntervalSet):
            for iv in other:
                self.subtract(iv)
            return self
        if other.empty:
            return self

        # an infinite bound removes the infinity itself, open or not
        pieces: List[Interval] = []
        if other.lower != -INF:
            pieces.append(Interval(-INF, other.lower, True, not other.left_closed))
        if other.upper != INF:
            pieces.append(Interval(other.upper, INF, not other.right_closed, True))
        remaining: List[Interval] = []
        for iv in self._intervals:
            for piece in (iv.intersect(p) for p in pieces):
                if not piece.empty:
                    remaining.append(piece)
        self._set(remaining)
        return self

    def __iadd__(self, other: "Interval | IntervalSet") -> "IntervalSet":
        return self.union_with(other)

    def __isub__(self, other: "Interval | IntervalSet") -> "IntervalSet":
        return self.subtract(other)

    def __add__(self, other: "Interval | IntervalSet") -> "IntervalSet":
        return self.copy().union_with(other)

    def __sub__(self, other: "Interval | IntervalSet") -> "IntervalSet":
        return self.copy().subtract(other)

    def copy(self) -> "IntervalSet":
        out = IntervalSet()
        out._set(list(self._intervals))
        return out

    # ----- queries -----
    def contains(self, value: float) -> bool:
        value = float(value)
        if math.isnan(value) or not self._intervals:
            return False
        idx = bisect_right(self._lowers, value) - 1
        for i in (idx, idx - 1):
            if 0 <= i < len(self._intervals) and self._intervals[i].contains(value):
                return True
        return False

    def __contains__(self, value: float) -> bool:
        return self.contains(value)

    @property
    def empty(self) -> bool:
        return not self._intervals

    def is_everything(self) -> bool:
        """True if the set covers all reals, i.e. it does not restrict anything."""
        if len(self._intervals) != 1:
            return False
        iv = self._intervals[0]
        return iv.lower == -INF and iv.upper == INF

    def discretize(self, lo: float, hi: float) -> "IntervalSet":
        """
        Integer version of the set, clipped to the representable range
        ``[lo, hi]`` of an integer image type.

        Open bounds are moved to the nearest included integer, so the result
        consists of closed intervals with integral bounds only.
        """
        out = IntervalSet()
        for iv in self._intervals:
            clipped = iv.intersect(Interval.closed(lo, hi))
            if clipped.empty:
                continue
            lower = math.ceil(clipped.lower)
            if not clipped.left_closed and lower == clipped.lower:
                lower += 1
            upper = math.floor(clipped.upper)
            if not clipped.right_closed and upper == clipped.upper:
                upper -= 1
            if lower <= upper:
                out.union_with(Interval.closed(lower, upper))
        return out

    def mask(self, values: np.ndarray) -> np.ndarray:
        """Element-wise membership test of *values* (any shape) as bool array."""
        values = np.asarray(values)
        iset = self
        if np.issubdtype(values.dtype, np.integer):
            info = np.iinfo(values.dtype)
            iset = self.discretize(info.min, info.max)
        elif values.dtype == np.bool_:
            values = values.astype(np.uint8)

        out = np.zeros(values.shape, dtype=bool)
        for iv in iset:
            if iv.left_closed:
                inside = values >= iv.lower
            else:
                inside = values > iv.lower
            if iv.right_closed:
                inside &= values <= iv.upper
            else:
                inside &= values < iv.upper
            out |= inside
        return out

    # ----- container protocol -----
    def __iter__(self) -> Iterator[Interval]:
        return iter(self._intervals)

    def __len__(self) -> int:
        return len(self._intervals)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IntervalSet):
            return NotImplemented
        return self._intervals == other._intervals

    def __repr__(self) -> str:
        return f"IntervalSet({str(self)})"

    def __str__(self) -> str:
        if not self._intervals:
            return "{}"
        return " U ".join(str(iv) for iv in self._intervals)

    def _set(self, intervals: List[Interval]) -> None:
        self._intervals = intervals
        self._lowers = [iv.lower for iv in intervals]
