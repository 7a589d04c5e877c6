"""
fusion.interpolation
====================
Gap filling of an image time series by linear interpolation in time.

For each date to fill and each pixel / channel marked for filling, the
nearest usable date on the left and on the right within ``limit_days`` is
searched.  A date is usable at a location if the location is valid there
and not marked for filling itself.

* both found → linear interpolation by date
* one found  → copy of that value
* none found → ``NONINTERPOLATED``

Images are held in an :class:`~fusion.store.ImageStore` as a sliding window:
dates older than ``date - limit_days`` are evicted before the window moves
on, so memory is bounded by the window, not by the length of the series.

Public API
----------
interpolate_date(target, left, right, ...) → (values, found)
InterpolationTask(config, io=None)         – call .run() → stats DataFrame
"""

from __future__ import annotations

import time
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from .algorithms.base import cast_to
from .config import InterpolationConfig, QualityLayerConfig
from .export import save_dataframe
from .ingestion import GeoInfo, RasterIO, output_filename, validate_alignment
from .masks import (
    combine_mask_images,
    combine_ranges,
    compose_mask,
    expand_mask,
    find_nodata_value,
)
from .pixelstate import PixelState, classify_pixel_states, fill_attempted
from .store import ImageStore, MultiResCollection


STATS_COLUMNS = [
    "filename", "date", "tag", "width", "height", "channels",
    "values", "nodata", "to_interpolate", "not_interpolated",
    "status", "output_path",
]


# ======================================================================== #
#  1.  Per-date interpolation                                               #
# ======================================================================== #

Source = Tuple[int, np.ndarray, np.ndarray]   # (date, image, usable)


def _nearest_values(
    sources: Sequence[Source],
    shape: Tuple[int, ...],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """First usable value per location, searching *sources* in the given order."""
    values = np.zeros(shape, dtype=np.float64)
    dates = np.zeros(shape, dtype=np.float64)
    found = np.zeros(shape, dtype=bool)
    for date, image, usable in sources:
        sel = usable & ~found
        values[sel] = image[sel]
        dates[sel] = date
        found |= sel
    return values, dates, found


def interpolate_date(
    date: int,
    left: Sequence[Source],
    right: Sequence[Source],
    shape: Tuple[int, ...],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Interpolated values at *date* for every location.

    Parameters
    ----------
    date : int
        Target date.
    left, right : sequence of (date, image, usable)
        Candidate dates before / after the target, nearest first.
    shape : tuple
        ``(C, H, W)`` of the target image.

    Returns
    -------
    values : float64 array
        Interpolated or copied values (undefined where not found).
    found : bool array
        Where a left or right value exists.
    """
    lv, ld, lf = _nearest_values(left, shape)
    rv, rd, rf = _nearest_values(right, shape)

    values = np.where(lf, lv, rv)
    both = lf & rf
    if both.any():
        span = rd[both] - ld[both]
        values[both] = lv[both] + (rv[both] - lv[both]) * (date - ld[both]) / span
    return values, lf | rf


# ======================================================================== #
#  2.  Task                                                                 #
# ======================================================================== #

class InterpolationTask:
    """
    Gap filling for every resolution tag of an :class:`InterpolationConfig`.

    Parameters
    ----------
    config : InterpolationConfig
    io : object, optional
        Loader / writer with the interface of :class:`~fusion.ingestion.RasterIO`.
    store : ImageStore, optional
        Image cache used as sliding window.
    """

    def __init__(
        self,
        config: InterpolationConfig,
        io: Any = None,
        store: Optional[ImageStore] = None,
    ):
        config.validate()
        self.cfg = config
        self.io = io if io is not None else RasterIO(config.data_dir)
        self.store = store if store is not None else ImageStore()
        self.entries = MultiResCollection()
        for e in config.images:
            self.entries.set(e.tag, e.date, e)
        self.interp_set = config.interp_set()
        self.valid_set = combine_ranges(config.masks.parsed_ranges())
        self.quality_layers: Dict[Tuple[Optional[str], int], List[QualityLayerConfig]] = {}
        for q in config.quality_layers:
            self.quality_layers.setdefault((q.tag, q.date), []).append(q)

        self.valid_masks: MultiResCollection = MultiResCollection()
        self.fill_layers: MultiResCollection = MultiResCollection()
        self.geoinfos: MultiResCollection = MultiResCollection()
        self.base_mask: Optional[np.ndarray] = None
        self.stats: List[Dict[str, Any]] = []
        self.unreadable: Set[Tuple[str, int]] = set()

    # ------------------------------------------------------------------ #
    #  Dates                                                               #
    # ------------------------------------------------------------------ #

    def _has_quality_layer(self, tag: str, date: int) -> bool:
        return (tag, date) in self.quality_layers or (None, date) in self.quality_layers

    def interp_dates(self, tag: str) -> List[int]:
        """
        Dates of *tag* to fill.

        Explicit dates if configured; otherwise every image date when value
        ranges mark what to fill, else only dates with a quality layer.
        """
        dates = self.entries.get_dates(tag)
        if self.cfg.interp_dates is not None:
            return sorted(set(self.cfg.interp_dates) & set(dates))
        if self.interp_set is not None:
            return dates
        return [d for d in dates if self._has_quality_layer(tag, d)]

    # ------------------------------------------------------------------ #
    #  Main entry point                                                    #
    # ------------------------------------------------------------------ #

    def run(self) -> pd.DataFrame:
        """
        Interpolate all tags.

        Returns
        -------
        pd.DataFrame
            One row per date to fill (see ``STATS_COLUMNS``).
        """
        t0 = time.time()
        geos = []
        for e in self.cfg.images:
            try:
                geos.append(((e.tag, e.date), self.io.read_geoinfo(e)))
            except OSError as exc:
                warnings.warn(f"Could not read metadata of '{e.tag}' image at date {e.date}: {exc}")
                self.unreadable.add((e.tag, e.date))
        ref = validate_alignment(geos)
        for (tag, date), gi in geos:
            self.geoinfos.set(tag, date, gi)
        if self.cfg.masks.mask_files:
            crop = self.cfg.images[0].crop
            masks = [self.io.load_mask(mf, crop) for mf in self.cfg.masks.mask_files]
            self.base_mask = combine_mask_images(masks, ref.count, (ref.height, ref.width))

        if self.cfg.interp_dates is not None:
            known = {e.date for e in self.cfg.images}
            for d in sorted(set(self.cfg.interp_dates) - known):
                warnings.warn(f"No image for interpolation date {d}, skipping it.")
                self.stats.append(self._stats_row(None, d, None, None, status="missing"))

        for tag in self.entries.tags:
            dates = self.interp_dates(tag)
            if self.cfg.verbose:
                print(f"\n{'='*60}")
                print(f"  Interpolating '{tag}': {len(dates)} date(s)")
                print(f"{'='*60}")
            for d in dates:
                if (tag, d) not in self.unreadable:
                    self._slide_window(tag, d)
                if not self.store.has(tag, d):
                    self.stats.append(self._stats_row(
                        self.entries.get(tag, d).path, d, tag, None, status="failed"
                    ))
                    continue
                self._interpolate(tag, d)
            self._evict_all(tag)

        df = pd.DataFrame(self.stats, columns=STATS_COLUMNS)
        if self.cfg.stats_file:
            save_dataframe(df, self.cfg.stats_file, fmt=self.cfg.output.report_format)
        if self.cfg.verbose:
            print(f"\n✓ Interpolation completed in {time.time() - t0:.1f}s")
        return df

    # ------------------------------------------------------------------ #
    #  Sliding window                                                      #
    # ------------------------------------------------------------------ #

    def _window(self, tag: str, date: int) -> List[int]:
        lo, hi = date - self.cfg.limit_days, date + self.cfg.limit_days
        return [d for d in self.entries.get_dates(tag)
                if lo <= d <= hi and (tag, d) not in self.unreadable]

    def _evict(self, tag: str, date: int) -> None:
        self.store.remove(tag, date)
        self.valid_masks.remove(tag, date)
        self.fill_layers.remove(tag, date)

    def _evict_all(self, tag: str) -> None:
        for d in self.store.get_dates(tag):
            self._evict(tag, d)

    def _slide_window(self, tag: str, date: int) -> None:
        """Evict dates that left the window, then load the new ones."""
        window = set(self._window(tag, date))
        for d in self.store.get_dates(tag):
            if d not in window:
                self._evict(tag, d)
        for d in sorted(window):
            if not self.store.has(tag, d):
                self._load(tag, d)

    def _load(self, tag: str, date: int) -> None:
        """Load image, valid mask and fill layer of one date; drop the date if unreadable."""
        try:
            self._load_layers(tag, date)
        except OSError as exc:
            warnings.warn(f"Could not load '{tag}' image at date {date}: {exc}")
            self.unreadable.add((tag, date))

    def _load_layers(self, tag: str, date: int) -> None:
        image, geo = self.io.load(self.entries.get(tag, date))
        nodata = geo.nodata if self.cfg.masks.use_nodata else None
        valid = compose_mask(
            self.base_mask, image, self.valid_set,
            nodata=nodata, use_nodata=self.cfg.masks.use_nodata,
        )
        valid = expand_mask(valid, image.shape)

        fill = np.zeros(image.shape, dtype=bool)
        for key in ((tag, date), (None, date)):
            for q in self.quality_layers.get(key, []):
                fill |= expand_mask(self.io.load_quality_layer(q, self.entries.get(tag, date).crop),
                                    image.shape)
        if self.interp_set is not None:
            fill |= self.interp_set.mask(image)
        if self.cfg.interp_invalid:
            fill |= ~valid

        self.store.set(tag, date, image)
        self.valid_masks.set(tag, date, valid)
        self.fill_layers.set(tag, date, fill)
        self.geoinfos.set(tag, date, geo)

    # ------------------------------------------------------------------ #
    #  Interpolation of one date                                           #
    # ------------------------------------------------------------------ #

    def _sources(self, tag: str, dates: Sequence[int]) -> List[Source]:
        return [
            (d, self.store.get(tag, d),
             self.valid_masks.get(tag, d) & ~self.fill_layers.get(tag, d))
            for d in dates
        ]

    def _interpolate(self, tag: str, date: int) -> None:
        image = self.store.get(tag, date)
        valid = self.valid_masks.get(tag, date)
        fill = self.fill_layers.get(tag, date)
        prefer = self.cfg.prefer_fill_over_nodata

        window = self.store.get_dates(tag)
        left = self._sources(tag, [d for d in reversed(window) if d < date])
        right = self._sources(tag, [d for d in window if d > date])

        attempted = fill_attempted(valid, fill, prefer)
        values, found = interpolate_date(date, left, right, image.shape)
        found &= attempted

        out = image.copy()
        out[found] = cast_to(values[found], image.dtype)
        states = classify_pixel_states(valid, fill, found=found, prefer_fill_over_nodata=prefer)

        geo: GeoInfo = self.geoinfos.get(tag, date)
        invalid = (states == PixelState.NODATA) | (states == PixelState.NONINTERPOLATED)
        nodata = geo.nodata
        if nodata is None and invalid.any():
            nodata = find_nodata_value(out, ~invalid)
            if nodata is not None:
                geo = geo.with_nodata(nodata)
        if nodata is not None:
            out[invalid] = nodata

        entry = self.entries.get(tag, date)
        out_cfg = self.cfg.output
        out_dir = Path(out_cfg.output_dir)
        name = output_filename(entry.path, out_cfg.prefix, out_cfg.postfix, date, date, date,
                               out_cfg.out_format)
        status, written = "written", None
        try:
            written = str(self.io.write(out, geo, out_dir / name, out_cfg.out_format))
        except OSError as exc:
            warnings.warn(f"Could not write interpolated image of '{tag}' at {date}: {exc}")
            status = "failed"

        if self.cfg.write_pixelstate or (nodata is None and invalid.any()):
            ps_name = output_filename(entry.path, self.cfg.pixelstate_prefix, out_cfg.postfix,
                                      date, date, date, out_cfg.out_format)
            ps_geo = geo.with_count(states.shape[0], "uint8").with_nodata(None)
            try:
                self.io.write(states, ps_geo, out_dir / ps_name, out_cfg.out_format)
            except OSError as exc:
                warnings.warn(f"Could not write pixel states of '{tag}' at {date}: {exc}")

        row = self._stats_row(entry.path, date, tag, states, status=status, output_path=written)
        if self.cfg.verbose:
            print(f"  {date}: {row['to_interpolate']} to interpolate, "
                  f"{row['not_interpolated']} not interpolated → {written}")
        self.stats.append(row)

    @staticmethod
    def _stats_row(
        filename: Optional[str],
        date: int,
        tag: Optional[str],
        states: Optional[np.ndarray],
        status: str = "written",
        output_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        if states is None:
            c, h, w = 0, 0, 0
            nodata = to_interp = not_interp = 0
        else:
            c, h, w = states.shape
            nodata = int(np.count_nonzero(states == PixelState.NODATA))
            not_interp = int(np.count_nonzero(states == PixelState.NONINTERPOLATED))
            to_interp = not_interp + int(np.count_nonzero(states == PixelState.INTERPOLATED))
        return {
            "filename": filename,
            "date": date,
            "tag": tag,
            "width": w,
            "height": h,
            "channels": c,
            "values": c * h * w,
            "nodata": nodata,
            "to_interpolate": to_interp,
            "not_interpolated": not_interp,
            "status": status,
            "output_path": output_path,
        }
