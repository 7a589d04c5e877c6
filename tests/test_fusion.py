"""
tests/test_fusion.py
====================
Unit tests for the fusion modules.
Run with:  python -m pytest tests/ -v
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# ======================================================================== #
#  Helpers                                                                  #
# ======================================================================== #

HIGH_DATES = [1, 7, 14]
LOW_DATES = [1, 3, 4, 7, 10, 12, 13, 14, 15]
PRED_DATES = [3, 4, 10, 12, 13, 15]


def low_image(date, shape=(1, 2, 3)):
    return np.full(shape, 10 * date, dtype=np.int16)


def high_image(date, shape=(1, 2, 3)):
    return np.full(shape, 10 * date + 1000, dtype=np.int16)


def make_images(high=HIGH_DATES, low=LOW_DATES, shape=(1, 2, 3)):
    """Synthetic series where every correct prediction equals ``10*t + 1000``."""
    images = {}
    for d in high:
        images[("h", d)] = high_image(d, shape)
    for d in low:
        images[("l", d)] = low_image(d, shape)
    return images


def make_entries(images):
    from fusion.config import ImageEntry
    return [ImageEntry(f"{tag}_{date}.tif", date, tag) for tag, date in sorted(images)]


class FakeIO:
    """In-memory stand-in for RasterIO that records every call.

    *nodata* is one value for all images or a dict by tag.
    """

    def __init__(self, images, nodata=None, fail_load=(), fail_write=()):
        self.images = images
        self.nodata = nodata
        self.fail_load = set(fail_load)
        self.fail_write = set(fail_write)
        self.loads = []
        self.written = {}
        self.copied = []

    def _geo(self, array, tag=None):
        from fusion.ingestion import GeoInfo
        c, h, w = array.shape
        nodata = self.nodata.get(tag) if isinstance(self.nodata, dict) else self.nodata
        return GeoInfo(width=w, height=h, count=c, dtype=array.dtype.name, nodata=nodata)

    def read_geoinfo(self, entry):
        return self._geo(self.images[(entry.tag, entry.date)], entry.tag)

    def load(self, entry):
        key = (entry.tag, entry.date)
        if key in self.fail_load:
            raise OSError(f"cannot read {entry.path}")
        self.loads.append(key)
        array = self.images[key].copy()
        return array, self._geo(array, entry.tag)

    def load_mask(self, cfg, crop=None):
        return self.images[("mask", cfg.path)]

    def load_quality_layer(self, cfg, crop=None):
        return self.images[("quality", cfg.path)]

    def write(self, array, geoinfo, path, driver=None):
        path = Path(path)
        if path.name in self.fail_write:
            raise OSError("disk full")
        self.written[path.name] = (np.array(array), geoinfo)
        return path

    def copy(self, src, dst):
        self.copied.append((str(src), str(dst)))
        return Path(dst)


def fusion_config(images, **kwargs):
    from fusion.config import FusionConfig, OutputConfig
    kwargs.setdefault("pred_dates", PRED_DATES)
    kwargs.setdefault("output", OutputConfig(output_dir="out"))
    kwargs.setdefault("verbose", False)
    return FusionConfig(images=make_entries(images), **kwargs)


def write_tif(path, array, nodata=None):
    import rasterio
    from rasterio.transform import from_origin
    c, h, w = array.shape
    with rasterio.open(
        path, "w", driver="GTiff", width=w, height=h, count=c,
        dtype=array.dtype.name, transform=from_origin(0, h, 1, 1), nodata=nodata,
    ) as dst:
        dst.write(array)


# ======================================================================== #
#  Interval tests                                                           #
# ======================================================================== #

class TestIntervals:
    def test_union_merges_adjacent(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet()
        s += Interval.right_open(0, 5)
        s += Interval.closed(5, 10)
        assert len(s) == 1
        assert 0 in s and 5 in s and 10 in s

    def test_open_bounds_do_not_merge(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.right_open(0, 5), Interval.left_open(5, 10)])
        assert len(s) == 2
        assert 5 not in s
        assert 4.999 in s and 5.001 in s

    def test_subtract_point_splits(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.closed(0, 10)])
        s -= Interval.point(3)
        assert len(s) == 2
        assert 3 not in s
        assert 2.9 in s and 3.1 in s

    def test_subtract_inner_interval(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet().union_with(Interval.closed(0, 10)).subtract(Interval.closed(3, 5))
        assert 0 in s and 2.999 in s and 5.001 in s and 10 in s
        assert 3 not in s and 4 not in s and 5 not in s

    def test_subtract_infinite_bounds(self):
        from fusion.config import parse_range
        from fusion.intervals import INF, IntervalSet
        s = IntervalSet.everything() - parse_range("[-inf, 0]")
        assert len(s) == 1
        assert -INF not in s and 0 not in s
        assert 0.001 in s and INF in s
        assert (IntervalSet.everything() - parse_range("[-inf, inf]")).empty

    def test_disjoint_closed_bounds_contained(self):
        from fusion.intervals import Interval, IntervalSet
        bounds = [(-5, -2), (0, 0), (3, 7.5), (10, 20)]
        s = IntervalSet([Interval.closed(lo, hi) for lo, hi in bounds])
        assert len(s) == len(bounds)
        for lo, hi in bounds:
            assert lo in s and hi in s
        for gap in (-5.001, -1.999, -0.001, 0.001, 2.999, 7.501, 9.999, 20.001):
            assert gap not in s

    def test_order_of_operations_matters(self):
        from fusion.intervals import Interval, IntervalSet
        valid, invalid = Interval.closed(0, 10), Interval.closed(3, 5)
        a = IntervalSet() + valid - invalid
        b = IntervalSet() - invalid + valid
        assert 4 not in a
        assert 4 in b

    def test_nan_is_never_contained(self):
        from fusion.intervals import IntervalSet
        assert float("nan") not in IntervalSet.everything()

    def test_everything(self):
        from fusion.intervals import INF, IntervalSet
        s = IntervalSet.everything()
        assert s.is_everything()
        assert -1e300 in s and 1e300 in s
        assert INF in s

    def test_discretize(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.open(0.5, 3), Interval.closed(250, 300)])
        d = s.discretize(0, 255)
        assert [(iv.lower, iv.upper) for iv in d] == [(1, 2), (250, 255)]
        assert all(iv.left_closed and iv.right_closed for iv in d)

    def test_mask_integer_image(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.open(1, 3)])
        values = np.array([[1, 2, 3]], dtype=np.uint8)
        np.testing.assert_array_equal(s.mask(values), [[False, True, False]])

    def test_mask_float_image(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.left_open(0, 1)])
        values = np.array([0.0, 0.5, 1.0, np.nan])
        np.testing.assert_array_equal(s.mask(values), [False, True, True, False])

    def test_copy_is_independent(self):
        from fusion.intervals import Interval, IntervalSet
        s = IntervalSet([Interval.closed(0, 10)])
        t = s.copy()
        t -= Interval.closed(0, 10)
        assert t.empty
        assert 5 in s


# ======================================================================== #
#  Config tests                                                             #
# ======================================================================== #

class TestConfig:
    def test_parse_range_brackets(self):
        from fusion.config import parse_range
        iv = parse_range("[0, 10)")
        assert (iv.lower, iv.upper, iv.left_closed, iv.right_closed) == (0, 10, True, False)
        iv = parse_range("0,10")
        assert not iv.left_closed and not iv.right_closed

    def test_parse_range_point_and_inf(self):
        from fusion.config import parse_range
        p = parse_range("5")
        assert p.lower == p.upper == 5 and 5 in p
        iv = parse_range("[-inf, 0]")
        assert not iv.left_closed
        assert -1e308 in iv

    def test_parse_range_list(self):
        from fusion.config import parse_range_list
        s = parse_range_list("(125,175) [225,275]")
        assert len(s) == 2
        assert 125 not in s and 150 in s and 225 in s

    def test_parse_range_bad_raises(self):
        from fusion.config import ConfigurationError, parse_range
        with pytest.raises(ConfigurationError):
            parse_range("[abc]")
        with pytest.raises(ConfigurationError):
            parse_range("[1,2] x")

    def test_parse_ranges_unknown_kind(self):
        from fusion.config import ConfigurationError, parse_ranges
        with pytest.raises(ConfigurationError):
            parse_ranges([("sometimes-valid", "[0,1]")])

    def test_fusion_config_roundtrip(self, tmp_path):
        from fusion.config import (
            ExistingPolicy, FusionConfig, MaskConfig, SinglePairMode,
        )
        cfg = fusion_config(
            make_images(),
            pred_filenames={3: "p3.tif"},
            singlepair_mode=SinglePairMode.ALL,
            existing_policy=ExistingPolicy.IGNORE,
            masks=MaskConfig(ranges=[("valid", "[0,5000]")]),
        )
        path = tmp_path / "cfg.json"
        cfg.save(path)
        loaded = FusionConfig.load(path)
        assert loaded.singlepair_mode is SinglePairMode.ALL
        assert loaded.existing_policy is ExistingPolicy.IGNORE
        assert loaded.pred_filenames == {3: "p3.tif"}
        assert loaded.masks.ranges == [("valid", "[0,5000]")]
        assert [e.date for e in loaded.images] == [e.date for e in cfg.images]

    def test_interpolation_config_roundtrip(self, tmp_path):
        from fusion.config import InterpolationConfig, QualityLayerConfig
        cfg = InterpolationConfig(
            images=make_entries(make_images()),
            quality_layers=[QualityLayerConfig("q.tif", 3, preset="modis")],
            interp_ranges=["[0,0]"],
            limit_days=2,
        )
        path = tmp_path / "interp.json"
        cfg.save(path)
        loaded = InterpolationConfig.load(path)
        assert loaded.limit_days == 2
        assert loaded.quality_layers[0].preset == "modis"
        assert loaded.output.prefix == "interpolated_"

    def test_interp_set(self):
        from fusion.config import InterpolationConfig
        cfg = InterpolationConfig(non_interp_ranges=["[0,100]"])
        s = cfg.interp_set()
        assert 50 not in s and 101 in s
        assert InterpolationConfig().interp_set() is None

    def test_resolve_roles_by_count(self):
        from fusion.config import resolve_roles
        entries = make_entries(make_images())
        assert resolve_roles(entries) == ("h", "l")
        assert resolve_roles(entries, low_tag="h") == ("l", "h")

    def test_resolve_roles_errors(self):
        from fusion.config import ConfigurationError, ImageEntry, resolve_roles
        equal = [ImageEntry("a", 1, "a"), ImageEntry("b", 1, "b")]
        with pytest.raises(ConfigurationError):
            resolve_roles(equal)
        three = equal + [ImageEntry("c", 1, "c")]
        with pytest.raises(ConfigurationError):
            resolve_roles(three)
        dup = equal + [ImageEntry("a2", 1, "a")]
        with pytest.raises(ConfigurationError):
            resolve_roles(dup, high_tag="b")
        with pytest.raises(ConfigurationError):
            resolve_roles(equal, high_tag="x")

    def test_validate_rejects_bad_policy(self):
        from fusion.config import ConfigurationError
        cfg = fusion_config(make_images(), singlepair_mode="sometimes")
        with pytest.raises(ConfigurationError):
            cfg.validate()

    def test_validate_rejects_bad_report_format(self):
        from fusion.config import ConfigurationError, OutputConfig
        cfg = fusion_config(make_images(), output=OutputConfig(report_format="xlsx"))
        with pytest.raises(ConfigurationError):
            cfg.validate()

    def test_file_hash(self, tmp_path):
        from fusion.config import file_hash
        f = tmp_path / "dummy.txt"
        f.write_text("hello")
        h = file_hash(f)
        assert isinstance(h, str) and len(h) == 64


# ======================================================================== #
#  Image store tests                                                        #
# ======================================================================== #

class TestStore:
    def test_set_get_remove(self):
        from fusion.store import ImageStore
        store = ImageStore()
        img = np.zeros((1, 2, 2))
        store.set("h", 3, img)
        assert store.has("h", 3)
        assert store.get("h", 3) is img
        assert store.remove("h", 3) is img
        assert not store.has("h", 3)
        assert len(store) == 0

    def test_missing_key_raises(self):
        from fusion.store import ImageStore, NotFoundError
        store = ImageStore()
        with pytest.raises(NotFoundError):
            store.get("h", 1)
        with pytest.raises(NotFoundError):
            store.remove("h", 1)
        with pytest.raises(KeyError):
            store.get_any()

    def test_dates_tags_and_peak(self):
        from fusion.store import ImageStore
        store = ImageStore()
        for d in (5, 1, 3):
            store.set("l", d, np.zeros(1))
        store.set("h", 1, np.zeros(1))
        assert store.get_dates("l") == [1, 3, 5]
        assert store.tags == ["h", "l"]
        assert store.count("l") == 3
        store.remove("l", 5)
        store.set("l", 5, np.zeros(1))
        assert store.peak == 4
        assert ("h", 1) in store


# ======================================================================== #
#  Mask tests                                                               #
# ======================================================================== #

class TestMasks:
    def test_compose_mask_range_and_nodata(self):
        from fusion.intervals import Interval, IntervalSet
        from fusion.masks import compose_mask
        image = np.array([[[5.0, 99.0, 12.0]]])
        valid = IntervalSet([Interval.closed(0, 10)])
        mask = compose_mask(None, image, valid, nodata=99)
        np.testing.assert_array_equal(mask, [[[True, False, False]]])

    def test_compose_mask_unrestricted_is_none(self):
        from fusion.masks import compose_mask
        assert compose_mask(None, np.ones((1, 2, 2))) is None
        assert compose_mask(None, np.ones((1, 2, 2)), nodata=5, use_nodata=False) is None

    def test_compose_mask_nan_nodata(self):
        from fusion.masks import compose_mask
        image = np.array([[[1.0, np.nan]]])
        mask = compose_mask(None, image, nodata=float("nan"))
        np.testing.assert_array_equal(mask, [[[True, False]]])

    def test_compose_mask_single_channel_base(self):
        from fusion.intervals import Interval, IntervalSet
        from fusion.masks import compose_mask
        base = np.array([[[True, True]]])
        image = np.array([[[1, 20]], [[20, 1]]], dtype=np.int16)
        mask = compose_mask(base, image, IntervalSet([Interval.closed(0, 10)]))
        assert mask.shape == (1, 1, 2)
        np.testing.assert_array_equal(mask, [[[True, False]]])

    def test_combine_ranges_first_invalid_starts_from_everything(self):
        from fusion.config import parse_ranges
        from fusion.masks import combine_ranges
        s = combine_ranges(parse_ranges([("invalid", "[3,5]"), ("valid", "[4,4]")]))
        assert 100 in s and 3 not in s and 4 in s

    def test_combine_ranges_per_role(self):
        from fusion.config import parse_ranges
        from fusion.masks import resolve_valid_sets
        opts = parse_ranges([("valid", "[0,100]"), ("high-invalid", "[50,60]")])
        sets = resolve_valid_sets(opts)
        assert 55 not in sets.high
        assert 55 in sets.low

    def test_combine_ranges_no_options(self):
        from fusion.masks import combine_ranges, resolve_valid_sets
        assert combine_ranges([]) is None
        assert resolve_valid_sets([]).for_role("high") is None

    def test_empty_valid_set_warns(self):
        from fusion.config import parse_ranges
        from fusion.masks import resolve_valid_sets
        with pytest.warns(UserWarning):
            resolve_valid_sets(parse_ranges([("valid", "[0,1]"), ("invalid", "[0,1]")]))

    def test_extract_bits(self):
        from fusion.masks import extract_bits
        out = extract_bits(np.array([0b101000, 0b001000], dtype=np.uint8), [5, 3])
        np.testing.assert_array_equal(out, [0b11, 0b01])

    def test_quality_to_mask_modis_preset(self):
        from fusion.masks import QUALITY_PRESETS, quality_to_mask
        p = QUALITY_PRESETS["modis"]
        values = np.array([0, 1, 3, 0b1001], dtype=np.uint16)
        np.testing.assert_array_equal(
            quality_to_mask(values, p["bits"], p["options"]), [False, True, False, True]
        )

    def test_quality_to_mask_rejects_float(self):
        from fusion.masks import MaskError, quality_to_mask
        with pytest.raises(MaskError):
            quality_to_mask(np.zeros(3, dtype=np.float32))

    def test_combine_mask_images(self):
        from fusion.masks import MaskError, combine_mask_images
        a = np.array([[[255, 0, 255]]], dtype=np.uint8)
        b = np.array([[[255, 255, 0]]], dtype=np.uint8)
        np.testing.assert_array_equal(
            combine_mask_images([a, b], 3, (1, 3)), [[[True, False, False]]]
        )
        with pytest.raises(MaskError):
            combine_mask_images([a.astype(np.int16)], 3, (1, 3))
        with pytest.raises(MaskError):
            combine_mask_images([np.zeros((2, 1, 3), dtype=np.uint8)], 3, (1, 3))

    def test_find_nodata_value(self):
        from fusion.masks import find_nodata_value
        assert find_nodata_value(np.zeros(3, dtype=np.float32)) == -9999.0
        assert find_nodata_value(np.array([1, 2], dtype=np.int16)) == -9999
        assert find_nodata_value(np.array([-9999, 1], dtype=np.int16)) == -32768
        assert find_nodata_value(np.array([255, 254, 0], dtype=np.uint8)) == 253

    def test_find_nodata_value_ignores_masked(self):
        from fusion.masks import find_nodata_value
        image = np.array([[[-9999, 5]]], dtype=np.int16)
        mask = np.array([[[False, True]]])
        assert find_nodata_value(image, mask) == -9999

    def test_find_nodata_value_exhausted(self):
        from fusion.masks import find_nodata_value
        assert find_nodata_value(np.arange(256, dtype=np.uint8)) is None


# ======================================================================== #
#  Pixel state tests                                                        #
# ======================================================================== #

class TestPixelState:
    def test_after_attempt(self):
        from fusion.pixelstate import PixelState, classify_pixel_states
        was_valid = np.array([False, False, True, True, True])
        needs = np.array([False, True, False, True, True])
        found = np.array([False, True, False, True, False])
        states = classify_pixel_states(was_valid, needs, found, prefer_fill_over_nodata=False)
        assert list(states) == [
            PixelState.NODATA, PixelState.NODATA, PixelState.CLEAR,
            PixelState.INTERPOLATED, PixelState.NONINTERPOLATED,
        ]

    def test_prefer_fill_over_nodata(self):
        from fusion.pixelstate import PixelState, classify_pixel_states
        states = classify_pixel_states(
            np.array([False, False]), np.array([True, True]),
            found=np.array([True, False]), prefer_fill_over_nodata=True,
        )
        assert list(states) == [PixelState.INTERPOLATED, PixelState.NONINTERPOLATED]

    def test_before_attempt(self):
        from fusion.pixelstate import PixelState, classify_pixel_states
        states = classify_pixel_states(np.array([True, True]), np.array([False, True]))
        assert list(states) == [PixelState.CLEAR, PixelState.NONINTERPOLATED]
        assert states.dtype == np.uint8

    def test_values_and_alias(self):
        from fusion.pixelstate import PixelState, count_states
        assert PixelState.PREDICTED is PixelState.INTERPOLATED
        assert [int(s) for s in (PixelState.NODATA, PixelState.NONINTERPOLATED,
                                 PixelState.CLEAR, PixelState.INTERPOLATED)] == [0, 64, 128, 192]
        c = count_states(np.array([0, 128, 128, 192], dtype=np.uint8))
        assert c == {"nodata": 1, "noninterpolated": 0, "clear": 2, "interpolated": 1}


# ======================================================================== #
#  Job decomposition tests                                                  #
# ======================================================================== #

class TestJobs:
    def test_mixed_mode_example(self):
        from fusion.config import SinglePairMode
        from fusion.jobs import Job, decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES, mode=SinglePairMode.MIXED)
        assert plan.pair_dates == (1, 7, 14)
        assert plan.jobs == [
            Job(1, 7, (3, 4)),
            Job(7, 14, (10, 12, 13)),
            Job(14, None, (15,)),
        ]
        assert not plan.skipped

    def test_ignore_mode_skips_outliers(self):
        from fusion.config import SinglePairMode
        from fusion.jobs import PredCase, decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES, mode=SinglePairMode.IGNORE)
        assert all(not j.is_single for j in plan.jobs)
        assert list(plan.skipped) == [15]
        assert plan.cases[15] is PredCase.OUTLIER

    def test_all_mode_nearest_pair(self):
        from fusion.config import SinglePairMode
        from fusion.jobs import Job, decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES, mode=SinglePairMode.ALL)
        # 4 is equally far from 1 and 7 and goes to the lower date
        assert plan.jobs == [
            Job(1, None, (3, 4)),
            Job(7, None, (10,)),
            Job(14, None, (12, 13, 15)),
        ]

    def test_double_pair_mode_off(self):
        from fusion.jobs import Job, decompose
        plan = decompose([1, 7], [1, 3, 7], [3], double_pair_mode=False)
        assert plan.jobs == [Job(1, None, (3,)), Job(7, None, (3,))]
        assert plan.jobs_for_date(3) == [0, 1]

    def test_single_before_double_with_same_date1(self):
        from fusion.jobs import Job, decompose
        plan = decompose([5, 9], [1, 5, 7, 9], [1, 7])
        assert plan.jobs == [Job(5, None, (1,)), Job(5, 9, (7,))]

    def test_classification_all_cases(self):
        from fusion.jobs import PredCase, classify_dates
        cases = classify_dates([1, 7, 14, 20], [1, 3, 7, 10, 14, 15], [3, 5, 7, 15, 20])
        assert cases == {
            1: PredCase.NOT_REQUESTED,
            3: PredCase.BETWEEN_PAIRS,
            5: PredCase.NO_INPUT,
            7: PredCase.BOTH_PRESENT,
            10: PredCase.NOT_REQUESTED,
            14: PredCase.NOT_REQUESTED,
            15: PredCase.OUTLIER,
            20: PredCase.HIGH_ONLY,
        }

    def test_plan_sets(self):
        from fusion.jobs import decompose
        plan = decompose([1, 7, 20], [1, 3, 7], [3, 5, 7, 20])
        assert plan.missing == [5]
        assert plan.existing == [7, 20]
        assert plan.scheduled == [3]
        assert 5 in plan.skipped

    def test_default_pred_dates_are_low_only(self):
        from fusion.jobs import decompose
        plan = decompose([1, 7], [1, 3, 7, 9])
        assert plan.requested == [3, 9]

    def test_double_only_method_rejects_single_modes(self):
        from fusion.config import ConfigurationError, SinglePairMode
        from fusion.jobs import decompose
        with pytest.raises(ConfigurationError):
            decompose(HIGH_DATES, LOW_DATES, PRED_DATES, mode=SinglePairMode.MIXED,
                      min_pairs=2, single_pair_capable=False)
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES, mode=SinglePairMode.IGNORE,
                         min_pairs=2, single_pair_capable=False)
        assert all(not j.is_single for j in plan.jobs)

    def test_too_few_pairs(self):
        from fusion.config import ConfigurationError, SinglePairMode
        from fusion.jobs import decompose
        with pytest.raises(ConfigurationError):
            decompose([], [1, 2], [2], mode=SinglePairMode.MIXED)
        plan = decompose([], [1, 2], [2], mode=SinglePairMode.IGNORE)
        assert plan.jobs == [] and list(plan.skipped) == [2]

    def test_duplicate_dates_rejected(self):
        from fusion.config import ConfigurationError
        from fusion.jobs import decompose
        with pytest.raises(ConfigurationError):
            decompose([1, 1], [1, 2])

    def test_case_table(self):
        from fusion.jobs import decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES)
        table = plan.case_table()
        assert isinstance(table, pd.DataFrame)
        assert len(table) == len(set(HIGH_DATES) | set(LOW_DATES))
        row = table.set_index("date").loc[15]
        assert row["case_name"] == "outlier"
        assert row["jobs"] == (2,)

    def test_job_rejects_unordered_anchors(self):
        from fusion.jobs import Job
        with pytest.raises(ValueError):
            Job(7, 1, (3,))


# ======================================================================== #
#  Plan check tests                                                         #
# ======================================================================== #

class TestChecks:
    def test_checks_pass(self):
        from fusion.checks import run_all_checks
        from fusion.config import SinglePairMode
        from fusion.jobs import decompose
        for mode in SinglePairMode:
            plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES + [7, 30], mode=mode)
            run_all_checks(plan, verbose=False)

    def test_unsorted_jobs_fail(self):
        from fusion.checks import assert_jobs_sorted
        from fusion.jobs import decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES)
        plan.jobs.reverse()
        with pytest.raises(AssertionError):
            assert_jobs_sorted(plan)

    def test_uncovered_date_fails(self):
        from fusion.checks import assert_coverage
        from fusion.jobs import decompose
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES)
        plan.jobs.pop()
        with pytest.raises(AssertionError):
            assert_coverage(plan)


# ======================================================================== #
#  Algorithm and registry tests                                             #
# ======================================================================== #

class TestAlgorithms:
    def _bound(self, images):
        from fusion.algorithms import TemporalDifferenceFusor
        from fusion.store import ImageStore
        store = ImageStore()
        for (tag, date), img in images.items():
            store.set(tag, date, img)
        algo = TemporalDifferenceFusor()
        algo.bind(store, "h", "l")
        return algo

    def test_difference_single_anchor(self):
        algo = self._bound(make_images())
        algo.set_anchors([14])
        pred = algo.predict(15)
        assert pred.dtype == np.int16
        np.testing.assert_array_equal(pred, high_image(15))

    def test_difference_double_anchor(self):
        images = make_images()
        images[("h", 7)] = high_image(7) + 6
        algo = self._bound(images)
        algo.set_anchors([1, 7])
        # weights 1/2 and 1/4 for distances 2 and 4
        np.testing.assert_array_equal(algo.predict(3), high_image(3) + 2)

    def test_set_anchors_validation(self):
        from fusion.config import ConfigurationError
        algo = self._bound(make_images())
        with pytest.raises(ConfigurationError):
            algo.set_anchors([1, 7, 14])

    def test_cast_to_saturates(self):
        from fusion.algorithms import cast_to
        out = cast_to(np.array([-3.6, 1.5, 300.0]), "uint8")
        np.testing.assert_array_equal(out, [0, 2, 255])

    def test_registry_lookup(self):
        from fusion.algorithms import (
            TemporalDifferenceFusor, get_method, instantiate_algorithm,
        )
        from fusion.config import ConfigurationError
        algo = instantiate_algorithm(get_method("Difference"), n_jobs=2)
        assert isinstance(algo, TemporalDifferenceFusor)
        assert algo.n_jobs == 2
        with pytest.raises(ConfigurationError):
            get_method("unknown")
        with pytest.raises(ConfigurationError):
            instantiate_algorithm(get_method("starfm"))

    def test_validate_method_policy(self):
        from fusion.algorithms import get_method, validate_method_policy
        from fusion.config import ConfigurationError, SinglePairMode
        with pytest.raises(ConfigurationError):
            validate_method_policy(get_method("estarfm"), SinglePairMode.MIXED)
        validate_method_policy(get_method("estarfm"), SinglePairMode.IGNORE)
        validate_method_policy(get_method("starfm"), SinglePairMode.ALL)

    def test_register_method_keeps_defaults(self):
        from fusion.algorithms import (
            FUSION_METHODS, FusionAlgorithm, instantiate_algorithm, register_method,
        )

        class Starfm(FusionAlgorithm):
            name = "starfm"

            def predict(self, date, mask=None):
                return self.high(self.anchors[0])

        previous = dict(FUSION_METHODS["starfm"])
        try:
            entry = register_method(Starfm)
            algo = instantiate_algorithm(entry, window_size=11)
            assert algo.params["window_size"] == 11
            assert algo.params["number_classes"] == 40
        finally:
            FUSION_METHODS["starfm"] = previous


# ======================================================================== #
#  Orchestrator tests                                                       #
# ======================================================================== #

class RecordingFusor:
    """Factory for a stateful test method that logs its calls."""

    @staticmethod
    def make(fail_dates=(), fail_train=()):
        from fusion.algorithms import FusionAlgorithm

        class Recording(FusionAlgorithm):
            name = "recording"
            stateful = True

            def __init__(self, **params):
                super().__init__(**params)
                self.events = []

            def train(self, anchors, mask=None):
                self.events.append(("train", tuple(anchors)))
                if tuple(anchors) in fail_train:
                    raise RuntimeError("training diverged")

            def predict(self, date, mask=None):
                self.events.append(("predict", date))
                if date in fail_dates:
                    raise RuntimeError("no convergence")
                return self.high(self.anchors[0]).copy()

            def load_model(self, path, reuse=None):
                self.events.append(("load", str(path)))

            def save_model(self, path):
                self.events.append(("save", str(path)))

        return Recording()


class TestOrchestrator:
    def test_predictions_and_report(self):
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images)
        task = FusionTask(fusion_config(images), io=io)
        report = task.run()

        assert report.dates_with_status(Status.WRITTEN) == PRED_DATES
        for d in PRED_DATES:
            rec = [r for r in report.records if r.date == d][0]
            array, _ = io.written[Path(rec.output_path).name]
            np.testing.assert_array_equal(array, high_image(d))
        assert "predicted_3_from_1_and_7.tif" in io.written
        assert "predicted_15_from_14.tif" in io.written
        assert len(task.store) == 0

    def test_memory_is_bounded(self):
        from fusion.orchestrator import FusionTask
        images = make_images()
        task = FusionTask(fusion_config(images), io=FakeIO(images))
        task.run()
        # two anchor pairs plus one low resolution image
        assert task.store.peak <= 5

    def test_anchors_loaded_once(self):
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images)
        FusionTask(fusion_config(images), io=io).run()
        assert io.loads.count(("h", 7)) == 1
        assert io.loads.count(("h", 14)) == 1

    def test_train_before_predict(self):
        from fusion.orchestrator import FusionTask
        images = make_images()
        algo = RecordingFusor.make()
        cfg = fusion_config(images, model_path="dict.npz", save_model_path="dict2.npz")
        FusionTask(cfg, algorithm=algo, io=FakeIO(images)).run()
        assert algo.events == [
            ("load", "dict.npz"),
            ("train", (1, 7)), ("predict", 3), ("predict", 4),
            ("train", (7, 14)), ("predict", 10), ("predict", 12), ("predict", 13),
            ("train", (14,)), ("predict", 15),
            ("save", "dict2.npz"),
        ]

    def test_prediction_failure_is_isolated(self):
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        algo = RecordingFusor.make(fail_dates={10})
        task = FusionTask(fusion_config(images), algorithm=algo, io=FakeIO(images))
        with pytest.warns(UserWarning):
            report = task.run()
        assert report.failed_dates() == [10]
        assert report.dates_with_status(Status.WRITTEN) == [3, 4, 12, 13, 15]
        assert not task.store.has("l", 10)

    def test_train_failure_fails_only_its_job(self):
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        algo = RecordingFusor.make(fail_train={(1, 7)})
        cfg = fusion_config(images, save_model_path="dict2.npz")
        task = FusionTask(cfg, algorithm=algo, io=FakeIO(images))
        with pytest.warns(UserWarning):
            report = task.run()
        assert report.failed_dates() == [3, 4]
        assert report.dates_with_status(Status.WRITTEN) == [10, 12, 13, 15]
        assert ("predict", 3) not in algo.events
        assert ("train", (7, 14)) in algo.events and ("train", (14,)) in algo.events
        assert algo.events[-1] == ("save", "dict2.npz")
        assert len(task.store) == 0

    def test_write_failure_is_isolated(self):
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images, fail_write={"predicted_4_from_1_and_7.tif"})
        with pytest.warns(UserWarning):
            report = FusionTask(fusion_config(images), io=io).run()
        assert report.failed_dates() == [4]
        assert "predicted_3_from_1_and_7.tif" in io.written

    def test_anchor_load_failure_fails_job(self):
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images, fail_load={("l", 7)})
        with pytest.warns(UserWarning):
            report = FusionTask(fusion_config(images), io=io).run()
        assert report.failed_dates() == [3, 4, 10, 12, 13]
        assert report.dates_with_status(Status.WRITTEN) == [15]

    def test_missing_and_skipped_dates_reported(self):
        from fusion.config import SinglePairMode
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        cfg = fusion_config(images, pred_dates=[3, 15, 20],
                            singlepair_mode=SinglePairMode.IGNORE)
        with pytest.warns(UserWarning):
            report = FusionTask(cfg, io=FakeIO(images)).run()
        assert report.missing_dates() == [20]
        assert report.skipped_dates() == [15]
        assert report.dates_with_status(Status.WRITTEN) == [3]

    def test_existing_copy_policy(self):
        from fusion.config import ExistingPolicy
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images)
        cfg = fusion_config(images, pred_dates=[3, 7], existing_policy=ExistingPolicy.COPY)
        report = FusionTask(cfg, io=io).run()
        assert report.dates_with_status(Status.COPIED) == [7]
        assert io.copied == [("h_7.tif", str(Path("out") / "predicted_h_7.tif"))]

    def test_existing_ignore_policy(self):
        from fusion.config import ExistingPolicy
        from fusion.orchestrator import FusionTask
        images = make_images()
        cfg = fusion_config(images, pred_dates=[7], existing_policy=ExistingPolicy.IGNORE)
        report = FusionTask(cfg, io=FakeIO(images)).run()
        assert report.skipped_dates() == [7]

    def test_existing_force_policy(self):
        from fusion.config import ExistingPolicy
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images)
        cfg = fusion_config(images, pred_dates=[7], existing_policy=ExistingPolicy.FORCE)
        task = FusionTask(cfg, io=io)
        report = task.run()
        assert report.dates_with_status(Status.WRITTEN) == [7]
        np.testing.assert_array_equal(io.written["predicted_h_7.tif"][0], high_image(7))
        assert len(task.store) == 0

    def test_existing_force_failure_is_isolated(self):
        from fusion.config import ExistingPolicy
        from fusion.export import Status
        from fusion.orchestrator import FusionTask
        images = make_images()
        io = FakeIO(images)
        algo = RecordingFusor.make(fail_dates={1})
        cfg = fusion_config(images, pred_dates=[1, 3, 7], existing_policy=ExistingPolicy.FORCE,
                            save_model_path="dict2.npz")
        task = FusionTask(cfg, algorithm=algo, io=io)
        with pytest.warns(UserWarning):
            report = task.run()
        assert report.failed_dates() == [1]
        assert report.dates_with_status(Status.WRITTEN) == [3, 7]
        assert "predicted_h_7.tif" in io.written
        assert algo.events[-1] == ("save", "dict2.npz")
        assert len(task.store) == 0

    def test_force_with_double_only_method_rejected(self):
        from fusion.algorithms import FusionAlgorithm
        from fusion.config import ConfigurationError, ExistingPolicy, SinglePairMode
        from fusion.orchestrator import FusionTask

        class DoubleOnly(FusionAlgorithm):
            name = "double-only"
            min_pairs = 2
            supports_single_pair = False

            def predict(self, date, mask=None):
                return self.high(self.anchors[0])

        images = make_images()
        cfg = fusion_config(images, singlepair_mode=SinglePairMode.IGNORE,
                            existing_policy=ExistingPolicy.FORCE)
        with pytest.raises(ConfigurationError):
            FusionTask(cfg, algorithm=DoubleOnly(), io=FakeIO(images))

    def test_nodata_synthesised_for_masked_pixels(self):
        from fusion.config import MaskConfig
        from fusion.orchestrator import FusionTask
        images = make_images()
        images[("l", 3)][0, 0, 0] = 9999
        io = FakeIO(images)
        cfg = fusion_config(images, pred_dates=[3],
                            masks=MaskConfig(ranges=[("valid", "[0,5000]")]))
        report = FusionTask(cfg, io=io).run()

        array, geo = io.written["predicted_3_from_1_and_7.tif"]
        assert geo.nodata == -9999
        assert array[0, 0, 0] == -9999
        assert (array.ravel()[1:] == 1030).all()
        frame = report.to_frame()
        assert frame.loc[0, "pixels_nodata"] == 1
        assert frame.loc[0, "pixels_predicted"] == 5

    def test_existing_nodata_value_used(self):
        from fusion.config import MaskConfig
        from fusion.orchestrator import FusionTask
        images = make_images()
        images[("l", 3)][0, 0, 0] = -1
        io = FakeIO(images, nodata=-1)
        cfg = fusion_config(images, pred_dates=[3], masks=MaskConfig())
        FusionTask(cfg, io=io).run()
        array, geo = io.written["predicted_3_from_1_and_7.tif"]
        assert geo.nodata == -1
        assert array[0, 0, 0] == -1

    def test_nodata_of_low_image_at_prediction_date_used(self):
        from fusion.config import MaskConfig
        from fusion.orchestrator import FusionTask
        images = make_images()
        images[("l", 3)][0, 0, 0] = -1
        io = FakeIO(images, nodata={"l": -1})
        cfg = fusion_config(images, pred_dates=[3], masks=MaskConfig())
        FusionTask(cfg, io=io).run()
        array, geo = io.written["predicted_3_from_1_and_7.tif"]
        assert geo.nodata == -1
        assert array[0, 0, 0] == -1
        assert (array.ravel()[1:] == 1030).all()

    def test_mask_file_and_mask_output(self):
        from fusion.config import MaskConfig, MaskFileConfig, OutputConfig
        from fusion.orchestrator import FusionTask
        images = make_images()
        cfg = fusion_config(
            images, pred_dates=[3],
            masks=MaskConfig(mask_files=[MaskFileConfig("m.tif")]),
            output=OutputConfig(output_dir="out", write_masks=True),
        )
        images[("mask", "m.tif")] = np.array([[[255, 255, 0], [255, 255, 255]]], dtype=np.uint8)
        io = FakeIO(images)
        report = FusionTask(cfg, io=io).run()
        mask, _ = io.written["mask_predicted_3_from_1_and_7.tif"]
        assert mask.sum() == 5
        assert report.records[0].mask_path.endswith("mask_predicted_3_from_1_and_7.tif")

    def test_explicit_filenames_in_several_jobs(self):
        from fusion.orchestrator import FusionTask
        images = make_images(high=[1, 7], low=[1, 3, 7])
        io = FakeIO(images)
        cfg = fusion_config(images, pred_dates=[3], pred_filenames={3: "p3.tif"},
                            use_double_pair_mode=False)
        report = FusionTask(cfg, io=io).run()
        assert set(io.written) == {"p3_from_1.tif", "p3_from_7.tif"}
        assert len(report) == 2

    def test_misaligned_images_rejected(self):
        from fusion.config import ConfigurationError
        from fusion.orchestrator import FusionTask
        images = make_images()
        images[("l", 10)] = low_image(10, shape=(1, 3, 3))
        with pytest.raises(ConfigurationError):
            FusionTask(fusion_config(images), io=FakeIO(images)).run()


# ======================================================================== #
#  Interpolation tests                                                      #
# ======================================================================== #

def interp_images():
    return {
        ("l", 1): np.array([[[10, 20, 30]]], dtype=np.int16),
        ("l", 2): np.array([[[0, 0, 50]]], dtype=np.int16),
        ("l", 3): np.array([[[30, 40, 70]]], dtype=np.int16),
    }


def interp_config(images, **kwargs):
    from fusion.config import InterpolationConfig, OutputConfig
    kwargs.setdefault("output", OutputConfig(output_dir="out", prefix="interpolated_"))
    kwargs.setdefault("verbose", False)
    return InterpolationConfig(images=make_entries(images), **kwargs)


class TestInterpolation:
    def test_interpolate_date_linear(self):
        from fusion.interpolation import interpolate_date
        shape = (1, 1, 2)
        usable = np.ones(shape, dtype=bool)
        left = [(1, np.full(shape, 10.0), usable)]
        right = [(5, np.full(shape, 50.0), np.array([[[True, False]]]))]
        values, found = interpolate_date(2, left, right, shape)
        np.testing.assert_allclose(values, [[[20.0, 10.0]]])
        assert found.all()

    def test_interpolate_date_nearest_first(self):
        from fusion.interpolation import interpolate_date
        shape = (1, 1, 1)
        left = [
            (3, np.full(shape, 99.0), np.zeros(shape, dtype=bool)),
            (2, np.full(shape, 20.0), np.ones(shape, dtype=bool)),
        ]
        values, found = interpolate_date(4, left, [], shape)
        assert values[0, 0, 0] == 20.0 and found.all()

    def test_fill_by_value_range(self):
        from fusion.interpolation import InterpolationTask
        images = interp_images()
        io = FakeIO(images)
        stats = InterpolationTask(interp_config(images, interp_ranges=["0"]), io=io).run()
        array, _ = io.written["interpolated_l_2.tif"]
        np.testing.assert_array_equal(array, [[[20, 30, 50]]])
        row = stats.set_index("date").loc[2]
        assert row["to_interpolate"] == 2
        assert row["not_interpolated"] == 0
        assert list(stats["date"]) == [1, 2, 3]

    def test_limit_days_leaves_gaps(self):
        from fusion.interpolation import InterpolationTask
        images = interp_images()
        io = FakeIO(images)
        stats = InterpolationTask(
            interp_config(images, interp_ranges=["0"], limit_days=0, write_pixelstate=True),
            io=io,
        ).run()
        array, geo = io.written["interpolated_l_2.tif"]
        np.testing.assert_array_equal(array, [[[-9999, -9999, 50]]])
        assert geo.nodata == -9999
        states, _ = io.written["pixelstate_l_2.tif"]
        np.testing.assert_array_equal(states, [[[64, 64, 128]]])
        assert stats.set_index("date").loc[2, "not_interpolated"] == 2

    def test_quality_layer_dates(self):
        from fusion.config import QualityLayerConfig
        from fusion.interpolation import InterpolationTask
        images = interp_images()
        images[("l", 2)] = np.array([[[99, 99, 50]]], dtype=np.int16)
        cfg = interp_config(images, quality_layers=[QualityLayerConfig("q2.tif", 2)])
        images[("quality", "q2.tif")] = np.array([[[True, False, False]]])
        io = FakeIO(images)
        task = InterpolationTask(cfg, io=io)
        assert task.interp_dates("l") == [2]
        task.run()
        array, _ = io.written["interpolated_l_2.tif"]
        np.testing.assert_array_equal(array, [[[20, 99, 50]]])

    def test_sliding_window_bounds_memory(self):
        from fusion.interpolation import InterpolationTask
        images = {("l", d): np.full((1, 1, 2), d, dtype=np.int16) for d in range(1, 9)}
        task = InterpolationTask(
            interp_config(images, interp_ranges=["[100,200]"], limit_days=1), io=FakeIO(images)
        )
        task.run()
        assert task.store.peak <= 3
        assert len(task.store) == 0

    def test_unreadable_date_is_isolated(self):
        from fusion.interpolation import InterpolationTask
        images = {
            ("l", 1): np.array([[[10, 20, 30]]], dtype=np.int16),
            ("l", 2): np.array([[[15, 25, 35]]], dtype=np.int16),
            ("l", 3): np.array([[[0, 0, 70]]], dtype=np.int16),
            ("l", 4): np.array([[[40, 50, 90]]], dtype=np.int16),
        }
        io = FakeIO(images, fail_load={("l", 2)})
        with pytest.warns(UserWarning):
            stats = InterpolationTask(interp_config(images, interp_ranges=["0"]), io=io).run()
        status = stats.set_index("date")["status"]
        assert status.to_dict() == {1: "written", 2: "failed", 3: "written", 4: "written"}
        assert "interpolated_l_2.tif" not in io.written
        array, _ = io.written["interpolated_l_3.tif"]
        np.testing.assert_array_equal(array, [[[30, 40, 70]]])

    def test_missing_interp_date(self):
        from fusion.interpolation import InterpolationTask
        images = interp_images()
        with pytest.warns(UserWarning):
            stats = InterpolationTask(
                interp_config(images, interp_dates=[2, 9], interp_ranges=["0"]),
                io=FakeIO(images),
            ).run()
        assert stats.set_index("date").loc[9, "status"] == "missing"


# ======================================================================== #
#  Ingestion tests (rasterio)                                               #
# ======================================================================== #

class TestIngestion:
    def test_write_and_load_roundtrip(self, tmp_path):
        from rasterio.transform import from_origin
        from fusion.config import ImageEntry
        from fusion.ingestion import GeoInfo, RasterIO
        array = np.arange(12, dtype=np.int16).reshape(2, 2, 3)
        geo = GeoInfo(width=3, height=2, count=2, dtype="int16", nodata=-9999,
                      transform=from_origin(0, 2, 1, 1))
        io = RasterIO(tmp_path)
        written = io.write(array, geo, tmp_path / "a.tif")
        assert written.exists()

        loaded, info = io.load(ImageEntry("a.tif", 1, "h"))
        np.testing.assert_array_equal(loaded, array)
        assert info.nodata == -9999
        assert info.shape == (2, 2, 3)

    def test_crop_and_bands(self, tmp_path):
        from fusion.config import ImageEntry
        from fusion.ingestion import RasterIO
        array = np.arange(24, dtype=np.uint8).reshape(2, 3, 4)
        write_tif(tmp_path / "b.tif", array)
        io = RasterIO(tmp_path)
        loaded, info = io.load(ImageEntry("b.tif", 1, "h", crop=(1, 1, 2, 0), bands=[1]))
        np.testing.assert_array_equal(loaded, array[1:, 1:, 1:3])
        assert (info.width, info.height, info.count) == (2, 2, 1)

    def test_crop_outside_raises(self, tmp_path):
        from fusion.config import ConfigurationError, ImageEntry
        from fusion.ingestion import RasterIO
        write_tif(tmp_path / "c.tif", np.zeros((1, 2, 2), dtype=np.uint8))
        with pytest.raises(ConfigurationError):
            RasterIO(tmp_path).read_geoinfo(ImageEntry("c.tif", 1, "h", crop=(1, 1, 5, 5)))

    def test_missing_file_raises_oserror(self, tmp_path):
        from fusion.config import ImageEntry
        from fusion.ingestion import RasterIO
        with pytest.raises(OSError):
            RasterIO(tmp_path).load(ImageEntry("nope.tif", 1, "h"))

    def test_bool_mask_written_as_uint8(self, tmp_path):
        import rasterio
        from fusion.ingestion import GeoInfo, RasterIO
        mask = np.array([[[True, False]]])
        path = RasterIO().write(mask, GeoInfo(2, 1, 1, "uint8"), tmp_path / "m.tif")
        with rasterio.open(path) as src:
            np.testing.assert_array_equal(src.read(), [[[255, 0]]])

    def test_quality_layer_preset(self, tmp_path):
        from fusion.config import ConfigurationError, QualityLayerConfig
        from fusion.ingestion import RasterIO
        write_tif(tmp_path / "q.tif", np.array([[[0, 1, 3]]], dtype=np.uint8))
        io = RasterIO(tmp_path)
        layer = io.load_quality_layer(QualityLayerConfig("q.tif", 1, preset="modis"))
        np.testing.assert_array_equal(layer, [[[False, True, False]]])
        with pytest.raises(ConfigurationError):
            io.load_quality_layer(QualityLayerConfig("q.tif", 1, preset="unknown"))

    def test_output_filename(self):
        from fusion.ingestion import output_filename
        assert output_filename("h_1.tif", "predicted_", "", 1, 4, 7) == "predicted_4_from_1_and_7.tif"
        assert output_filename("h_1.tif", "p_", "_x", 1, 4) == "p_4_from_1_x.tif"
        assert output_filename("h_1.tif", "p_", "", 1, 4, driver="PNG") == "p_4_from_1.png"
        assert output_filename("dir/h_7.img", "p_", "", 7, 7, 7) == "p_h_7.img"

    def test_validate_alignment(self):
        from fusion.config import ConfigurationError
        from fusion.ingestion import GeoInfo, validate_alignment
        a, b = GeoInfo(3, 2, 1, "int16"), GeoInfo(3, 2, 2, "int16")
        assert validate_alignment({"a": a, "a2": a}) is a
        with pytest.raises(ConfigurationError, match="channels"):
            validate_alignment({"a": a, "b": b})

    def test_fusion_task_on_geotiffs(self, tmp_path):
        from fusion.config import ImageEntry, OutputConfig
        from fusion.export import Status
        from fusion.ingestion import RasterIO
        from fusion.orchestrator import FusionTask
        images = make_images()
        for (tag, date), array in images.items():
            write_tif(tmp_path / f"{tag}_{date}.tif", array)
        cfg = fusion_config(images, data_dir=str(tmp_path), pred_dates=[3, 15, 7],
                            output=OutputConfig(output_dir=str(tmp_path / "out")))
        report = FusionTask(cfg).run()
        assert report.dates_with_status(Status.WRITTEN) == [3, 15]
        assert report.dates_with_status(Status.COPIED) == [7]

        pred, _ = RasterIO(tmp_path / "out").load(
            ImageEntry("predicted_3_from_1_and_7.tif", 3, "h")
        )
        np.testing.assert_array_equal(pred, high_image(3))
        assert (tmp_path / "out" / "predicted_h_7.tif").exists()


# ======================================================================== #
#  Export tests                                                             #
# ======================================================================== #

class TestExport:
    def test_report_frame_and_counts(self):
        from fusion.export import Status, TaskReport
        from fusion.jobs import PredCase
        report = TaskReport()
        report.add(4, PredCase.BETWEEN_PAIRS, Status.WRITTEN, anchors=(1, 7),
                   output_path="out/p4.tif", pixel_counts={"pixels_nodata": 2})
        report.add(3, PredCase.NO_INPUT, "missing")
        df = report.to_frame()
        assert list(df["date"]) == [3, 4]
        assert df.loc[1, "anchors"] == "1,7"
        assert df.loc[1, "pixels_nodata"] == 2
        assert report.counts()["written"] == 1
        assert report.written_paths() == ["out/p4.tif"]

    def test_empty_report_frame(self):
        from fusion.export import TaskReport
        df = TaskReport().to_frame()
        assert df.empty and "status" in df.columns

    def test_save_dataframe(self, tmp_path):
        from fusion.export import save_dataframe
        path = save_dataframe(pd.DataFrame({"a": [1]}), tmp_path / "x.txt")
        assert path.endswith("x.csv")
        with pytest.raises(ValueError):
            save_dataframe(pd.DataFrame(), tmp_path / "x", fmt="xlsx")

    def test_save_dataframe_parquet(self, tmp_path):
        pytest.importorskip("pyarrow")
        from fusion.export import save_dataframe
        df = pd.DataFrame({"date": [3, 4], "status": ["written", "failed"]})
        path = save_dataframe(df, tmp_path / "report.csv", fmt="parquet")
        assert path.endswith("report.parquet")
        pd.testing.assert_frame_equal(pd.read_parquet(path), df)

    def test_save_task_metadata(self, tmp_path):
        from fusion.export import Status, TaskReport, save_task_metadata
        from fusion.jobs import PredCase, decompose
        report = TaskReport()
        f = tmp_path / "p.tif"
        f.write_bytes(b"data")
        report.add(3, PredCase.BETWEEN_PAIRS, Status.WRITTEN, output_path=str(f))
        plan = decompose(HIGH_DATES, LOW_DATES, PRED_DATES)
        path = save_task_metadata(tmp_path, fusion_config(make_images()), report,
                                  plan=plan, hash_outputs=True, extra={"n": np.int64(3)})
        meta = json.loads(Path(path).read_text())
        assert meta["counts"]["written"] == 1
        assert meta["jobs"][0] == {"date1": 1, "date3": 7, "dates": [3, 4]}
        assert "p.tif" in meta["files_written"]
        assert meta["n"] == 3

    def test_task_overview(self):
        from fusion.export import task_overview
        from fusion.jobs import decompose
        text = task_overview(decompose(HIGH_DATES, LOW_DATES, PRED_DATES))
        assert "Pair dates (3): 1, 7, 14" in text
        assert "between pairs" in text


# ======================================================================== #
#  CLI tests                                                                #
# ======================================================================== #

class TestCLI:
    def test_run_fusion_main(self, tmp_path):
        from run_fusion import main
        images = make_images()
        for (tag, date), array in images.items():
            write_tif(tmp_path / f"{tag}_{date}.tif", array)
        cfg = {
            "images": [{"path": f"{t}_{d}.tif", "date": d, "tag": t} for t, d in images],
            "pred_dates": PRED_DATES,
            "data_dir": str(tmp_path),
            "output": {"output_dir": str(tmp_path / "out")},
        }
        path = tmp_path / "fusion_config.json"
        path.write_text(json.dumps(cfg))

        assert main(["--config", str(path), "--quiet"]) == 0
        report = pd.read_csv(tmp_path / "out" / "fusion_report.csv")
        assert sorted(report["date"]) == PRED_DATES
        assert (report["status"] == "written").all()
        assert (tmp_path / "out" / "metadata.json").exists()

    def test_configuration_error_exit_code(self, tmp_path, capsys):
        from run_fusion import main
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"images": []}))
        assert main(["--config", str(path)]) == 2
        assert "Configuration error" in capsys.readouterr().err


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
