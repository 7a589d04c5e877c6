"""
fusion.config
=============
Central configuration: enumerations, dataclasses and range-string parsing.

Every task is fully described by a `FusionConfig` (or `InterpolationConfig`)
dataclass that is serialised alongside results for reproducibility.  Range
strings such as ``"[0,10000]"`` or ``"(125,175) [225,275]"`` are parsed here
and nowhere else; the rest of the package only sees `IntervalSet` objects.
"""

from __future__ import annotations

import hashlib
import json
import platform
import re
import subprocess
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .intervals import INF, Interval, IntervalSet


class ConfigurationError(ValueError):
    """Inconsistent tags, dates, policies or options.  Aborts the whole task."""


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class SinglePairMode(str, Enum):
    """How prediction dates outside the span of the pair dates are handled."""
    IGNORE = "ignore"   # outliers are not predicted
    MIXED = "mixed"     # outliers single-anchor, between-pair dates double-anchor
    ALL = "all"         # every date single-anchor from its nearest pair date


class ExistingPolicy(str, Enum):
    """What to do with requested dates that already have a high-res image."""
    IGNORE = "ignore"   # skip
    COPY = "copy"       # copy the existing high-res file to the output path
    FORCE = "force"     # predict it anyway from itself


class DictReuse(str, Enum):
    """Dictionary handling for stateful methods loading a saved model."""
    CLEAR = "clear"
    IMPROVE = "improve"
    USE = "use"


class RangeKind(str, Enum):
    """Role and sense of a mask range option."""
    VALID = "valid"
    INVALID = "invalid"
    HIGH_VALID = "high-valid"
    HIGH_INVALID = "high-invalid"
    LOW_VALID = "low-valid"
    LOW_INVALID = "low-invalid"

    @property
    def is_valid(self) -> bool:
        return self in (RangeKind.VALID, RangeKind.HIGH_VALID, RangeKind.LOW_VALID)

    def applies_to(self, role: str) -> bool:
        """True if the option affects *role* (``"high"`` or ``"low"``)."""
        if self in (RangeKind.VALID, RangeKind.INVALID):
            return True
        return self.value.startswith(role + "-")


# ---------------------------------------------------------------------------
# Range strings
# ---------------------------------------------------------------------------
_NUMBER = r"[+-]?(?:inf(?:inity)?|\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)"
_INTERVAL_RE = re.compile(
    rf"\s*(?P<left>[\[(])?\s*(?P<lo>{_NUMBER})"
    rf"(?:\s*,?\s*(?P<hi>{_NUMBER})\s*(?P<right>[\])])?)?\s*,?",
    re.IGNORECASE,
)


def _match_interval(text: str, pos: int) -> Tuple[Interval, int]:
    m = _INTERVAL_RE.match(text, pos)
    if m is None or m.end() == pos:
        raise ConfigurationError(
            f"Could not read an interval at position {pos} of '{text}'."
        )
    lo = float(m.group("lo"))
    if m.group("hi") is None:
        if m.group("left") is not None:
            raise ConfigurationError(
                f"Interval string ended after lower bound {lo} in '{text}'."
            )
        return Interval.point(lo), m.end()

    hi = float(m.group("hi"))
    left_closed = m.group("left") == "[" and lo != -INF and lo != INF
    right_closed = m.group("right") == "]" and hi != -INF and hi != INF
    return Interval(lo, hi, left_closed, right_closed), m.end()


def parse_range(text: str) -> Interval:
    """
    Parse one interval.

    ``"[a,b]"`` is closed, ``"(a,b)"`` or ``"a,b"`` open, mixed brackets give
    half-open intervals, a single number ``"v"`` gives ``[v, v]``.  Infinite
    bounds are always open.
    """
    interval, end = _match_interval(text, 0)
    if text[end:].strip():
        raise ConfigurationError(f"Trailing characters after interval in '{text}'.")
    return interval


def parse_range_list(text: str | Sequence[str]) -> IntervalSet:
    """Parse a whitespace- or comma-separated list of intervals into their union."""
    if not isinstance(text, str):
        out = IntervalSet()
        for part in text:
            out += parse_range_list(part)
        return out

    out = IntervalSet()
    pos = 0
    while text[pos:].strip():
        interval, pos = _match_interval(text, pos)
        out += interval
    return out


def parse_ranges(options: Sequence[Tuple[str, str]]) -> List[Tuple[RangeKind, IntervalSet]]:
    """Turn ``[(kind, range-string), ...]`` into typed, parsed range options."""
    parsed = []
    for kind, text in options:
        try:
            rk = RangeKind(kind)
        except ValueError:
            raise ConfigurationError(
                f"Unknown range kind '{kind}'. "
                f"Use one of {[k.value for k in RangeKind]}."
            ) from None
        parsed.append((rk, parse_range_list(text)))
    return parsed


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------
@dataclass
class ImageEntry:
    """One input image file with its date and resolution tag."""
    path: str
    date: int
    tag: str
    crop: Optional[Tuple[int, int, int, int]] = None   # x, y, width, height
    bands: Optional[List[int]] = None                  # 0-based

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "date": self.date,
            "tag": self.tag,
            "crop": list(self.crop) if self.crop is not None else None,
            "bands": self.bands,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "ImageEntry":
        raw = dict(raw)
        if raw.get("crop") is not None:
            raw["crop"] = tuple(raw["crop"])
        return cls(**raw)


@dataclass
class MaskFileConfig:
    """
    An external mask file.

    Without *bits* and *ranges* it must be a ``uint8`` image where non-zero
    marks valid locations.  With them it is treated as a quality layer:
    the given bits are extracted and the result tested against the ranges.
    """
    path: str
    bits: Optional[List[int]] = None
    ranges: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def is_quality_layer(self) -> bool:
        return bool(self.bits) or bool(self.ranges)

    def parsed_ranges(self) -> List[Tuple[RangeKind, IntervalSet]]:
        return parse_ranges(self.ranges)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "bits": self.bits,
            "ranges": [list(r) for r in self.ranges],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "MaskFileConfig":
        raw = dict(raw)
        raw["ranges"] = [tuple(r) for r in raw.get("ranges", [])]
        return cls(**raw)


@dataclass
class MaskConfig:
    """Validity masking: ordered value ranges, mask files and nodata handling."""
    ranges: List[Tuple[str, str]] = field(default_factory=list)
    mask_files: List[MaskFileConfig] = field(default_factory=list)
    use_nodata: bool = True

    def parsed_ranges(self) -> List[Tuple[RangeKind, IntervalSet]]:
        return parse_ranges(self.ranges)

    def to_dict(self) -> dict:
        return {
            "ranges": [list(r) for r in self.ranges],
            "mask_files": [m.to_dict() for m in self.mask_files],
            "use_nodata": self.use_nodata,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "MaskConfig":
        return cls(
            ranges=[tuple(r) for r in raw.get("ranges", [])],
            mask_files=[MaskFileConfig.from_dict(m) for m in raw.get("mask_files", [])],
            use_nodata=raw.get("use_nodata", True),
        )


@dataclass
class OutputConfig:
    """Where and how outputs are written."""
    output_dir: str = "outputs"
    prefix: str = "predicted_"
    postfix: str = ""
    mask_prefix: str = "mask_"
    mask_postfix: str = ""
    out_format: Optional[str] = None     # GDAL driver; None = from extension
    write_masks: bool = False
    report_format: str = "csv"           # csv | parquet (needs pyarrow)

    def validate(self) -> None:
        if self.report_format not in ("csv", "parquet"):
            raise ConfigurationError(
                f"Invalid report_format '{self.report_format}'. Use 'csv' or 'parquet'."
            )

    def to_dict(self) -> dict:
        return {
            "output_dir": self.output_dir,
            "prefix": self.prefix,
            "postfix": self.postfix,
            "mask_prefix": self.mask_prefix,
            "mask_postfix": self.mask_postfix,
            "out_format": self.out_format,
            "write_masks": self.write_masks,
            "report_format": self.report_format,
        }


@dataclass
class FusionConfig:
    """Master configuration for one fusion task."""

    # -- Inputs --
    images: List[ImageEntry] = field(default_factory=list)
    pred_dates: Optional[List[int]] = None          # None = all low-only dates
    pred_filenames: Dict[int, str] = field(default_factory=dict)
    high_tag: Optional[str] = None
    low_tag: Optional[str] = None
    data_dir: Optional[str] = None

    # -- Method --
    method: str = "difference"
    algorithm_params: Dict[str, Any] = field(default_factory=dict)
    singlepair_mode: SinglePairMode = SinglePairMode.MIXED
    existing_policy: ExistingPolicy = ExistingPolicy.COPY
    use_double_pair_mode: bool = True

    # -- Masking / output --
    masks: MaskConfig = field(default_factory=MaskConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # -- Stateful methods --
    model_path: Optional[str] = None
    save_model_path: Optional[str] = None
    dict_reuse: DictReuse = DictReuse.IMPROVE

    # -- Performance / reporting --
    n_jobs: int = 1
    verbose: bool = True

    # -- Reproducibility --
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    # ----- helpers -----
    def validate(self) -> None:
        """Raise `ConfigurationError` for inconsistent settings."""
        for attr, enum in (("singlepair_mode", SinglePairMode),
                           ("existing_policy", ExistingPolicy),
                           ("dict_reuse", DictReuse)):
            try:
                setattr(self, attr, enum(getattr(self, attr)))
            except ValueError:
                raise ConfigurationError(
                    f"Invalid {attr} '{getattr(self, attr)}'. "
                    f"Use one of {[e.value for e in enum]}."
                ) from None
        if not self.images:
            raise ConfigurationError("No input images given.")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1, got {self.n_jobs}.")
        if self.pred_dates is not None:
            dup = _duplicates(self.pred_dates)
            if dup:
                raise ConfigurationError(f"Duplicate prediction dates: {dup}.")
        resolve_roles(self.images, self.high_tag, self.low_tag)
        self.masks.parsed_ranges()
        for mf in self.masks.mask_files:
            mf.parsed_ranges()
        self.output.validate()

    def to_dict(self) -> dict:
        return {
            "images": [e.to_dict() for e in self.images],
            "pred_dates": self.pred_dates,
            "pred_filenames": {str(k): v for k, v in self.pred_filenames.items()},
            "high_tag": self.high_tag,
            "low_tag": self.low_tag,
            "data_dir": self.data_dir,
            "method": self.method,
            "algorithm_params": self.algorithm_params,
            "singlepair_mode": self.singlepair_mode.value,
            "existing_policy": self.existing_policy.value,
            "use_double_pair_mode": self.use_double_pair_mode,
            "masks": self.masks.to_dict(),
            "output": self.output.to_dict(),
            "model_path": self.model_path,
            "save_model_path": self.save_model_path,
            "dict_reuse": self.dict_reuse.value,
            "n_jobs": self.n_jobs,
            "verbose": self.verbose,
            "created_at": self.created_at,
        }

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def from_dict(cls, raw: dict) -> "FusionConfig":
        raw = dict(raw)
        raw["images"] = [ImageEntry.from_dict(e) for e in raw.get("images", [])]
        raw["pred_filenames"] = {
            int(k): v for k, v in raw.get("pred_filenames", {}).items()
        }
        for key, enum in (("singlepair_mode", SinglePairMode),
                          ("existing_policy", ExistingPolicy),
                          ("dict_reuse", DictReuse)):
            if key in raw:
                raw[key] = enum(raw[key])
        raw["masks"] = MaskConfig.from_dict(raw.get("masks", {}))
        raw["output"] = OutputConfig(**raw.get("output", {}))
        return cls(**raw)

    @classmethod
    def load(cls, path: str | Path) -> "FusionConfig":
        return cls.from_dict(json.loads(Path(path).read_text()))


@dataclass
class QualityLayerConfig:
    """
    A quality layer marking locations to interpolate (true) for one date.

    *preset* names an entry of `fusion.masks.QUALITY_PRESETS` and provides
    default *bits* and *ranges*.  A layer without *tag* applies to the
    images of every tag at that date.
    """
    path: str
    date: int
    tag: Optional[str] = None
    bits: Optional[List[int]] = None
    ranges: List[Tuple[str, str]] = field(default_factory=list)
    preset: Optional[str] = None

    def parsed_ranges(self) -> List[Tuple[RangeKind, IntervalSet]]:
        return parse_ranges(self.ranges)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "date": self.date,
            "tag": self.tag,
            "bits": self.bits,
            "ranges": [list(r) for r in self.ranges],
            "preset": self.preset,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "QualityLayerConfig":
        raw = dict(raw)
        raw["ranges"] = [tuple(r) for r in raw.get("ranges", [])]
        return cls(**raw)


@dataclass
class InterpolationConfig:
    """Configuration of a gap-filling (time series interpolation) task."""

    images: List[ImageEntry] = field(default_factory=list)
    quality_layers: List[QualityLayerConfig] = field(default_factory=list)
    interp_dates: Optional[List[int]] = None
    data_dir: Optional[str] = None

    # -- What to fill --
    interp_ranges: List[str] = field(default_factory=list)
    non_interp_ranges: List[str] = field(default_factory=list)
    interp_invalid: bool = True
    prefer_fill_over_nodata: bool = True
    limit_days: int = 5

    # -- Validity --
    masks: MaskConfig = field(default_factory=MaskConfig)

    # -- Output --
    output: OutputConfig = field(
        default_factory=lambda: OutputConfig(prefix="interpolated_")
    )
    write_pixelstate: bool = False
    pixelstate_prefix: str = "pixelstate_"
    stats_file: Optional[str] = None

    verbose: bool = True
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def interp_set(self) -> Optional[IntervalSet]:
        """Ranges of image values to fill, or None if no ranges were given."""
        if not self.interp_ranges and not self.non_interp_ranges:
            return None
        out = IntervalSet() if self.interp_ranges else IntervalSet.everything()
        out += parse_range_list(self.interp_ranges)
        out -= parse_range_list(self.non_interp_ranges)
        return out

    def validate(self) -> None:
        if not self.images:
            raise ConfigurationError("No input images given.")
        if self.limit_days < 0:
            raise ConfigurationError(f"limit_days must be >= 0, got {self.limit_days}.")
        per_tag: Dict[str, List[int]] = {}
        for e in self.images:
            per_tag.setdefault(e.tag, []).append(e.date)
        for tag, dates in per_tag.items():
            dup = _duplicates(dates)
            if dup:
                raise ConfigurationError(f"Duplicate dates {dup} for tag '{tag}'.")
        self.interp_set()
        self.masks.parsed_ranges()
        self.output.validate()

    def to_dict(self) -> dict:
        return {
            "images": [e.to_dict() for e in self.images],
            "quality_layers": [q.to_dict() for q in self.quality_layers],
            "interp_dates": self.interp_dates,
            "data_dir": self.data_dir,
            "interp_ranges": self.interp_ranges,
            "non_interp_ranges": self.non_interp_ranges,
            "interp_invalid": self.interp_invalid,
            "prefer_fill_over_nodata": self.prefer_fill_over_nodata,
            "limit_days": self.limit_days,
            "masks": self.masks.to_dict(),
            "output": self.output.to_dict(),
            "write_pixelstate": self.write_pixelstate,
            "pixelstate_prefix": self.pixelstate_prefix,
            "stats_file": self.stats_file,
            "verbose": self.verbose,
            "created_at": self.created_at,
        }

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def from_dict(cls, raw: dict) -> "InterpolationConfig":
        raw = dict(raw)
        raw["images"] = [ImageEntry.from_dict(e) for e in raw.get("images", [])]
        raw["quality_layers"] = [
            QualityLayerConfig.from_dict(q) for q in raw.get("quality_layers", [])
        ]
        raw["masks"] = MaskConfig.from_dict(raw.get("masks", {}))
        if "output" in raw:
            raw["output"] = OutputConfig(**raw["output"])
        return cls(**raw)

    @classmethod
    def load(cls, path: str | Path) -> "InterpolationConfig":
        return cls.from_dict(json.loads(Path(path).read_text()))


# ---------------------------------------------------------------------------
# Role resolution
# ---------------------------------------------------------------------------
def _duplicates(values: Sequence[int]) -> List[int]:
    return sorted(v for v, n in Counter(values).items() if n > 1)


def resolve_roles(
    images: Sequence[ImageEntry],
    high_tag: Optional[str] = None,
    low_tag: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Determine the high and low resolution tags of a fusion task.

    Exactly two tags must occur.  A missing tag is the other one; if neither
    is given, the tag with fewer images is the high resolution tag.
    """
    counts = Counter(e.tag for e in images)
    if len(counts) != 2:
        raise ConfigurationError(
            f"A fusion task needs images of exactly two resolution tags, "
            f"got {sorted(counts)}."
        )
    for tag in counts:
        dup = _duplicates([e.date for e in images if e.tag == tag])
        if dup:
            raise ConfigurationError(f"Duplicate dates {dup} for tag '{tag}'.")

    for given in (high_tag, low_tag):
        if given is not None and given not in counts:
            raise ConfigurationError(
                f"Resolution tag '{given}' does not occur in the images {sorted(counts)}."
            )
    if high_tag is not None and high_tag == low_tag:
        raise ConfigurationError(f"High and low tag are both '{high_tag}'.")

    a, b = sorted(counts)
    if high_tag is None and low_tag is None:
        if counts[a] == counts[b]:
            raise ConfigurationError(
                f"Cannot infer the high resolution tag: '{a}' and '{b}' both "
                f"have {counts[a]} images. Set high_tag explicitly."
            )
        high_tag = a if counts[a] < counts[b] else b
    if high_tag is None:
        high_tag = a if low_tag == b else b
    if low_tag is None:
        low_tag = a if high_tag == b else b
    return high_tag, low_tag


# ---------------------------------------------------------------------------
# Environment / reproducibility snapshot
# ---------------------------------------------------------------------------
def get_environment_info() -> dict:
    """Capture runtime environment for metadata."""
    info = {
        "python": platform.python_version(),
        "platform": platform.platform(),
        "timestamp": datetime.now().isoformat(),
    }
    try:
        info["git_commit"] = (
            subprocess.check_output(
                ["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL
            )
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        info["git_commit"] = None
    return info


def file_hash(filepath: str | Path, algo: str = "sha256") -> str:
    """Compute hash of a file for provenance tracking."""
    h = hashlib.new(algo)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()
