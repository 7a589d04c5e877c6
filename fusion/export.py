"""
fusion.export
=============
Task reports, metadata logging and reproducibility utilities.

Responsibilities
----------------
* Record the outcome of every requested date (`TaskReport`).
* Save DataFrames as CSV (primary) and optionally Parquet.
* Write task metadata JSON (config, environment, counts, output hashes).
* Render the textual task overview of a decomposed plan.

Folder layout
-------------
::

    <output_dir>/
        fusion_config.json            ← config snapshot
        fusion_report.csv             ← one row per requested date (and anchor)
        metadata.json                 ← environment, counts, written files
        predicted_<d2>_from_<d1>_and_<d3>.tif
        mask_predicted_... .tif        (optional)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .config import file_hash, get_environment_info
from .jobs import PredCase, TaskPlan


# ======================================================================== #
#  Task report                                                              #
# ======================================================================== #

class Status(str, Enum):
    WRITTEN = "written"
    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"
    MISSING = "missing"


@dataclass
class DateRecord:
    """Outcome of one requested date (for one anchor combination)."""
    date: int
    case: int
    status: Status
    anchors: Tuple[int, ...] = ()
    output_path: Optional[str] = None
    mask_path: Optional[str] = None
    reason: str = ""
    pixel_counts: Dict[str, int] = field(default_factory=dict)


class TaskReport:
    """Collects one :class:`DateRecord` per outcome; nothing is dropped silently."""

    COLUMNS = ["date", "case", "status", "anchors", "output_path", "mask_path", "reason"]

    def __init__(self) -> None:
        self.records: List[DateRecord] = []

    def add(
        self,
        date: int,
        case: PredCase | int,
        status: Status | str,
        **kwargs: Any,
    ) -> DateRecord:
        rec = DateRecord(date=int(date), case=int(case), status=Status(status), **kwargs)
        self.records.append(rec)
        return rec

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for r in self.records:
            row = {
                "date": r.date,
                "case": r.case,
                "status": r.status.value,
                "anchors": ",".join(str(a) for a in r.anchors),
                "output_path": r.output_path,
                "mask_path": r.mask_path,
                "reason": r.reason,
            }
            row.update(r.pixel_counts)
            rows.append(row)
        if not rows:
            return pd.DataFrame(columns=self.COLUMNS)
        df = pd.DataFrame(rows)
        return df.sort_values(["date", "anchors"], kind="stable").reset_index(drop=True)

    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in Status}
        for r in self.records:
            out[r.status.value] += 1
        return out

    def dates_with_status(self, status: Status | str) -> List[int]:
        status = Status(status)
        return sorted({r.date for r in self.records if r.status is status})

    def failed_dates(self) -> List[int]:
        return self.dates_with_status(Status.FAILED)

    def skipped_dates(self) -> List[int]:
        return self.dates_with_status(Status.SKIPPED)

    def missing_dates(self) -> List[int]:
        return self.dates_with_status(Status.MISSING)

    def written_paths(self) -> List[str]:
        return [
            r.output_path for r in self.records
            if r.status in (Status.WRITTEN, Status.COPIED) and r.output_path
        ]

    def __len__(self) -> int:
        return len(self.records)

    def __repr__(self) -> str:
        return f"TaskReport({self.counts()})"


# ======================================================================== #
#  Save tables                                                              #
# ======================================================================== #

def save_dataframe(
    df: pd.DataFrame,
    path: str | Path,
    fmt: str = "csv",
) -> str:
    """
    Save a DataFrame to disk.

    Parameters
    ----------
    df : pd.DataFrame
    path : str or Path
        Target file path (extension will be corrected).
    fmt : str
        ``'csv'`` (default) or ``'parquet'``.

    Returns
    -------
    str  – actual path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "parquet":
        path = path.with_suffix(".parquet")
        df.to_parquet(path, index=False)
    elif fmt == "csv":
        path = path.with_suffix(".csv")
        df.to_csv(path, index=False)
    else:
        raise ValueError(f"Unsupported format: {fmt}")

    return str(path)


# ======================================================================== #
#  Task metadata                                                            #
# ======================================================================== #

def save_task_metadata(
    output_dir: str | Path,
    config: Any,
    report: TaskReport,
    plan: Optional[TaskPlan] = None,
    hash_outputs: bool = False,
    extra: Optional[Dict] = None,
) -> str:
    """
    Write a ``metadata.json`` for one task.

    Returns the path of the written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    meta = {
        "timestamp": datetime.now().isoformat(),
        "config": config.to_dict(),
        "counts": report.counts(),
        "failed_dates": report.failed_dates(),
        "skipped_dates": report.skipped_dates(),
        "missing_dates": report.missing_dates(),
        "environment": get_environment_info(),
    }
    if plan is not None:
        meta["pair_dates"] = list(plan.pair_dates)
        meta["jobs"] = [
            {"date1": j.date1, "date3": j.date3, "dates": list(j.dates)}
            for j in plan.jobs
        ]

    if hash_outputs:
        meta["files_written"] = {
            os.path.basename(f): file_hash(f)
            for f in report.written_paths()
            if os.path.exists(f)
        }

    if extra:
        meta.update(_make_serialisable(extra))

    out_path = output_dir / "metadata.json"
    out_path.write_text(json.dumps(_make_serialisable(meta), indent=2, default=str))
    return str(out_path)


# ======================================================================== #
#  Task overview                                                            #
# ======================================================================== #

_CASE_LABELS = {
    PredCase.NOT_REQUESTED: "not requested",
    PredCase.BETWEEN_PAIRS: "between pairs",
    PredCase.OUTLIER: "outside pairs",
    PredCase.NO_INPUT: "no input",
    PredCase.BOTH_PRESENT: "high and low exist",
    PredCase.HIGH_ONLY: "high exists only",
}


def _fmt_dates(dates: List[int]) -> str:
    return ", ".join(str(d) for d in dates) if dates else "-"


def task_overview(plan: TaskPlan) -> str:
    """Human-readable overview of pair dates, jobs and date classification."""
    lines = [
        f"Pair dates ({len(plan.pair_dates)}): {_fmt_dates(list(plan.pair_dates))}",
        f"Single-pair mode: {plan.mode.value}",
        f"Jobs ({len(plan.jobs)}):",
    ]
    for i, job in enumerate(plan.jobs):
        anchors = ", ".join(str(a) for a in job.anchors)
        lines.append(f"  [{i}] anchors {anchors:<12} → {_fmt_dates(list(job.dates))}")
    lines.append("Dates by case:")
    for case in PredCase:
        dates = plan.dates_for_case(case)
        lines.append(f"  {int(case)} {_CASE_LABELS[case]:<20}: {_fmt_dates(dates)}")
    if plan.skipped:
        lines.append(f"Skipped: {_fmt_dates(sorted(plan.skipped))}")
    return "\n".join(lines)


# ======================================================================== #
#  Internal helpers                                                         #
# ======================================================================== #

def _make_serialisable(obj: Any) -> Any:
    """Recursively convert numpy types for JSON serialisation."""
    if isinstance(obj, dict):
        return {str(k): _make_serialisable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serialisable(v) for v in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    return obj
