"""
fusion.checks
=============
Consistency assertions on a decomposed task plan.

The orchestrator runs them before scheduling the first job unless asked
to skip them.  Can be run standalone (``python -m fusion.checks``) or
imported.
"""

from __future__ import annotations

from .jobs import PredCase, TaskPlan


# ======================================================================== #
#  Job order                                                                #
# ======================================================================== #

def assert_jobs_sorted(plan: TaskPlan) -> None:
    """Jobs must run in ascending ``date1`` order; eviction depends on it."""
    keys = [job.sort_key for job in plan.jobs]
    assert keys == sorted(keys), (
        f"Jobs are not sorted by anchor date: {[str(j) for j in plan.jobs]}"
    )


def assert_anchor_order(plan: TaskPlan) -> None:
    """Anchors are pair dates, and every date lies where its job can reach it."""
    pairs = set(plan.pair_dates)
    for job in plan.jobs:
        for a in job.anchors:
            assert a in pairs, f"{job}: anchor {a} is not a pair date {sorted(pairs)}"
        if not job.is_single:
            outside = [d for d in job.dates if not job.date1 < d < job.date3]
            assert not outside, f"{job}: dates {outside} are not between its anchors"
        assert list(job.dates) == sorted(job.dates), f"{job}: dates are not sorted"


# ======================================================================== #
#  Coverage                                                                 #
# ======================================================================== #

def assert_disjoint_dates(plan: TaskPlan) -> None:
    """
    Every date is in at most one double-anchor job and at most one job per
    single anchor, and no date is both scheduled and skipped.
    """
    seen_double = set()
    seen_single = set()
    for job in plan.jobs:
        for d in job.dates:
            key = d if not job.is_single else (job.date1, d)
            seen = seen_double if not job.is_single else seen_single
            assert key not in seen, f"Date {d} is scheduled twice ({job})"
            seen.add(key)

    both = set(plan.scheduled) & set(plan.skipped)
    assert not both, f"Dates {sorted(both)} are both scheduled and skipped"


def assert_coverage(plan: TaskPlan) -> None:
    """Scheduled + skipped + already existing dates == requested dates."""
    covered = set(plan.scheduled) | set(plan.skipped) | set(plan.existing)
    requested = set(plan.requested)
    assert covered == requested, (
        f"Date coverage mismatch: not handled {sorted(requested - covered)}, "
        f"not requested {sorted(covered - requested)}"
    )
    for d in plan.scheduled:
        assert plan.cases[d].predictable, (
            f"Date {d} is scheduled but has case {PredCase(plan.cases[d]).name}"
        )


def run_all_checks(plan: TaskPlan, verbose: bool = True) -> None:
    """Run the full battery of plan consistency checks."""
    if verbose:
        print("Running task plan checks...")

    assert_jobs_sorted(plan)
    assert_anchor_order(plan)
    assert_disjoint_dates(plan)
    assert_coverage(plan)

    if verbose:
        print("  ✓ All task plan checks passed.")


if __name__ == "__main__":
    print("Usage: run_all_checks(decompose(high_dates, low_dates, pred_dates))")
