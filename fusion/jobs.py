"""
fusion.jobs
===========
Job decomposition: turn dated high/low resolution images and requested
prediction dates into an ordered list of prediction jobs.

Everything here is a pure function of the date sets and the policy; no
images are touched.  The job order returned by :func:`decompose` is the
execution order the orchestrator relies on for eviction.

Public API
----------
PredCase                                   → six-way date classification
Job(date1, date3, dates)                   → one anchor pair (or single anchor) + its dates
classify_dates(high, low, pred)            → {date: PredCase}
build_jobs(pair_dates, cases, mode, ...)   → List[Job]
decompose(high, low, pred, mode, ...)      → TaskPlan
"""

from __future__ import annotations

from bisect import bisect_left
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .config import ConfigurationError, SinglePairMode


class MissingInputError(LookupError):
    """A requested prediction date has neither a high nor a low resolution image."""

    def __init__(self, date: int):
        super().__init__(date)
        self.date = date

    def __str__(self) -> str:
        return (
            f"Date {self.date} was requested for prediction, but there is no "
            f"image for it, neither high nor low resolution."
        )


class PredCase(IntEnum):
    """Classification of a date with respect to prediction."""
    NOT_REQUESTED = 0   # date occurs in the inputs but is not requested
    BETWEEN_PAIRS = 1   # low only, strictly between two pair dates
    OUTLIER = 2         # low only, before the first or after the last pair date
    NO_INPUT = 3        # requested, but neither image exists
    BOTH_PRESENT = 4    # requested, but already a pair date
    HIGH_ONLY = 5       # requested, high exists, low missing

    @property
    def predictable(self) -> bool:
        return self in (PredCase.BETWEEN_PAIRS, PredCase.OUTLIER)

    @property
    def existing(self) -> bool:
        return self in (PredCase.BOTH_PRESENT, PredCase.HIGH_ONLY)


@dataclass(frozen=True)
class Job:
    """
    Unit of scheduling.

    ``date3`` is ``None`` for a single-anchor job.  ``dates`` are the
    prediction dates this job produces, in ascending order.
    """
    date1: int
    date3: Optional[int]
    dates: Tuple[int, ...]

    def __post_init__(self):
        if self.date3 is not None and not self.date1 < self.date3:
            raise ValueError(f"Job anchors must be ordered, got {self.date1} and {self.date3}.")

    @property
    def is_single(self) -> bool:
        return self.date3 is None

    @property
    def anchors(self) -> Tuple[int, ...]:
        return (self.date1,) if self.date3 is None else (self.date1, self.date3)

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        # single-anchor job first among jobs sharing date1
        return (self.date1, 0 if self.is_single else 1, self.date3 or 0)

    def __str__(self) -> str:
        anchors = f"{self.date1}" if self.is_single else f"{self.date1}, {self.date3}"
        return f"Job(anchors=[{anchors}], dates={list(self.dates)})"


# ======================================================================== #
#  1.  Classification                                                       #
# ======================================================================== #

def _check_unique(dates: Sequence[int], role: str) -> None:
    dup = sorted(d for d, n in Counter(dates).items() if n > 1)
    if dup:
        raise ConfigurationError(f"Duplicate {role} dates: {dup}.")


def pair_dates_of(high_dates: Iterable[int], low_dates: Iterable[int]) -> Tuple[int, ...]:
    """Sorted dates with an image for both resolution tags."""
    return tuple(sorted(set(high_dates) & set(low_dates)))


def classify_dates(
    high_dates: Sequence[int],
    low_dates: Sequence[int],
    pred_dates: Sequence[int],
) -> Dict[int, PredCase]:
    """
    Classify every date that occurs in any of the three roles.

    The result depends only on which dates exist for which role; the
    single-pair policy is applied later in :func:`build_jobs`.
    """
    high, low, pred = set(high_dates), set(low_dates), set(pred_dates)
    pairs = pair_dates_of(high, low)

    cases: Dict[int, PredCase] = {}
    for d in sorted(high | low | pred):
        if d not in pred:
            cases[d] = PredCase.NOT_REQUESTED
        elif d in high and d in low:
            cases[d] = PredCase.BOTH_PRESENT
        elif d in high:
            cases[d] = PredCase.HIGH_ONLY
        elif d not in low:
            cases[d] = PredCase.NO_INPUT
        elif pairs and pairs[0] < d < pairs[-1]:
            cases[d] = PredCase.BETWEEN_PAIRS
        else:
            cases[d] = PredCase.OUTLIER
    return cases


def nearest_pair(pair_dates: Sequence[int], date: int) -> int:
    """Pair date closest to *date*; ties go to the lower date."""
    idx = bisect_left(pair_dates, date)
    if idx == 0:
        return pair_dates[0]
    if idx == len(pair_dates):
        return pair_dates[-1]
    lower, upper = pair_dates[idx - 1], pair_dates[idx]
    return lower if date - lower <= upper - date else upper


# ======================================================================== #
#  2.  Job construction                                                     #
# ======================================================================== #

def build_jobs(
    pair_dates: Sequence[int],
    cases: Dict[int, PredCase],
    mode: SinglePairMode = SinglePairMode.MIXED,
    double_pair_mode: bool = True,
) -> List[Job]:
    """
    Group the predictable dates into jobs.

    * between-pair dates go to the job of their two bounding pair dates,
      or, if *double_pair_mode* is off, to the single-anchor jobs of both.
    * ``ignore``: outliers get no job.
    * ``mixed``: outliers get a single-anchor job at the first / last pair.
    * ``all``: every date gets a single-anchor job at its nearest pair.

    Single-anchor jobs are merged per anchor.  Jobs are sorted by ``date1``;
    a single-anchor job comes before the double-anchor job with the same
    ``date1``.
    """
    pairs = sorted(pair_dates)
    doubles: Dict[Tuple[int, int], List[int]] = {}
    singles: Dict[int, List[int]] = {}

    for d, case in sorted(cases.items()):
        if not case.predictable:
            continue
        if not pairs:
            continue
        if mode is SinglePairMode.ALL:
            singles.setdefault(nearest_pair(pairs, d), []).append(d)
        elif case is PredCase.BETWEEN_PAIRS:
            idx = bisect_left(pairs, d)
            lo, hi = pairs[idx - 1], pairs[idx]
            if double_pair_mode:
                doubles.setdefault((lo, hi), []).append(d)
            else:
                singles.setdefault(lo, []).append(d)
                singles.setdefault(hi, []).append(d)
        elif mode is SinglePairMode.MIXED:
            anchor = pairs[0] if d < pairs[0] else pairs[-1]
            singles.setdefault(anchor, []).append(d)

    jobs = [Job(lo, hi, tuple(sorted(ds))) for (lo, hi), ds in doubles.items()]
    jobs += [Job(a, None, tuple(sorted(ds))) for a, ds in singles.items()]
    return sorted(jobs, key=lambda j: j.sort_key)


# ======================================================================== #
#  3.  Task plan                                                            #
# ======================================================================== #

@dataclass
class TaskPlan:
    """Result of the decomposition: jobs plus everything that is not a job."""
    pair_dates: Tuple[int, ...]
    jobs: List[Job]
    cases: Dict[int, PredCase]
    mode: SinglePairMode = SinglePairMode.MIXED
    high_dates: Tuple[int, ...] = ()
    low_dates: Tuple[int, ...] = ()
    skipped: Dict[int, str] = field(default_factory=dict)

    @property
    def requested(self) -> List[int]:
        return sorted(d for d, c in self.cases.items() if c is not PredCase.NOT_REQUESTED)

    @property
    def missing(self) -> List[int]:
        return self.dates_for_case(PredCase.NO_INPUT)

    @property
    def existing(self) -> List[int]:
        return sorted(d for d, c in self.cases.items() if c.existing)

    @property
    def scheduled(self) -> List[int]:
        return sorted({d for job in self.jobs for d in job.dates})

    def dates_for_case(self, case: PredCase) -> List[int]:
        return sorted(d for d, c in self.cases.items() if c is case)

    def jobs_for_date(self, date: int) -> List[int]:
        return [i for i, job in enumerate(self.jobs) if date in job.dates]

    def case_table(self) -> pd.DataFrame:
        """One row per date with role presence, case and job indices."""
        high, low = set(self.high_dates), set(self.low_dates)
        rows = [
            {
                "date": d,
                "has_high": d in high,
                "has_low": d in low,
                "requested": c is not PredCase.NOT_REQUESTED,
                "case": int(c),
                "case_name": c.name.lower(),
                "jobs": tuple(self.jobs_for_date(d)),
            }
            for d, c in sorted(self.cases.items())
        ]
        return pd.DataFrame(
            rows,
            columns=["date", "has_high", "has_low", "requested", "case", "case_name", "jobs"],
        )


def decompose(
    high_dates: Sequence[int],
    low_dates: Sequence[int],
    pred_dates: Optional[Sequence[int]] = None,
    mode: SinglePairMode = SinglePairMode.MIXED,
    min_pairs: int = 1,
    single_pair_capable: bool = True,
    double_pair_mode: bool = True,
) -> TaskPlan:
    """
    Classify all dates and build the ordered job list.

    Parameters
    ----------
    high_dates, low_dates : sequence of int
        Dates with a high / low resolution image.
    pred_dates : sequence of int, optional
        Requested prediction dates.  Default: every low-only date.
    mode : SinglePairMode
        Handling of dates outside the span of the pair dates.
    min_pairs : int
        Pair dates the method needs at least (1 or 2).
    single_pair_capable : bool
        Whether the method can predict from a single anchor.
    double_pair_mode : bool
        If off, between-pair dates are predicted once from each bounding pair.

    Raises
    ------
    ConfigurationError
        Duplicate dates, a single-anchor policy for a double-anchor-only
        method, or too few pair dates for the dates to predict.
    """
    mode = SinglePairMode(mode)
    _check_unique(high_dates, "high resolution")
    _check_unique(low_dates, "low resolution")
    if pred_dates is None:
        pred_dates = sorted(set(low_dates) - set(high_dates))
    _check_unique(pred_dates, "prediction")

    if not single_pair_capable:
        if mode is not SinglePairMode.IGNORE:
            raise ConfigurationError(
                f"Single-pair mode '{mode.value}' requires a method that can "
                f"predict from a single pair. Use 'ignore'."
            )
        if not double_pair_mode:
            raise ConfigurationError(
                "Disabling the double pair mode requires a method that can "
                "predict from a single pair."
            )

    cases = classify_dates(high_dates, low_dates, pred_dates)
    pairs = pair_dates_of(high_dates, low_dates)

    predictable = [d for d, c in cases.items() if c.predictable]
    if predictable and len(pairs) < min_pairs and (mode is not SinglePairMode.IGNORE or min_pairs > 1):
        raise ConfigurationError(
            f"The method needs at least {min_pairs} pair date(s) to predict "
            f"{predictable}, but there are {len(pairs)}: {list(pairs)}."
        )

    jobs = build_jobs(pairs, cases, mode, double_pair_mode)
    scheduled = {d for job in jobs for d in job.dates}

    skipped: Dict[int, str] = {}
    for d, c in cases.items():
        if c is PredCase.NO_INPUT:
            skipped[d] = str(MissingInputError(d))
        elif c.predictable and d not in scheduled:
            skipped[d] = (
                f"Date {d} lies outside the pair dates {list(pairs)} and "
                f"single-pair mode is '{mode.value}'."
            )

    return TaskPlan(
        pair_dates=pairs,
        jobs=jobs,
        cases=cases,
        mode=mode,
        high_dates=tuple(sorted(high_dates)),
        low_dates=tuple(sorted(low_dates)),
        skipped=skipped,
    )
