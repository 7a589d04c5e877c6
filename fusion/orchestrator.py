"""
fusion.orchestrator
===================
Task runner: executes the decomposed jobs with bounded memory and
per-date failure isolation.

Execution of one job
--------------------
.. code-block:: text

    load anchors (high + low) that are not in the store yet
    pair mask  = base mask AND value tests of every anchor image
    train(anchors, pair mask)                 (stateful methods only)
    for date in job.dates:
        load low image of date
        pred mask = pair mask AND value test of the low image
        predict → synthesise nodata → write (+ mask) → evict low image
    evict anchors no later job refers to

Anchor load or training failures fail the whole job; prediction and write
failures skip only the one output.  Every requested date ends up in the :class:`TaskReport`.

Public API
----------
FusionTask(config, algorithm=None, io=None, store=None) – call .run()
"""

from __future__ import annotations

import time
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Set, Tuple

import numpy as np

from .algorithms import FusionAlgorithm, get_method, instantiate_algorithm, validate_method_policy
from .checks import run_all_checks
from .config import (
    ConfigurationError,
    ExistingPolicy,
    FusionConfig,
    ImageEntry,
    resolve_roles,
)
from .export import Status, TaskReport, task_overview
from .ingestion import GeoInfo, RasterIO, output_filename, validate_alignment
from .jobs import Job, MissingInputError, PredCase, TaskPlan, decompose
from .masks import (
    RoleValidSets,
    combine_mask_images,
    compose_mask,
    expand_mask,
    find_nodata_value,
    resolve_valid_sets,
)
from .pixelstate import classify_pixel_states, count_states
from .store import ImageStore, MultiResCollection, NotFoundError


class FusionTask:
    """
    End-to-end fusion task.

    Parameters
    ----------
    config : FusionConfig
        Task configuration.  Validated on construction.
    algorithm : FusionAlgorithm, optional
        Method instance.  Default: instantiated from ``config.method``.
    io : object, optional
        Image loader / writer with the interface of
        :class:`~fusion.ingestion.RasterIO`.  Default: ``RasterIO(config.data_dir)``.
    store : ImageStore, optional
        Image cache.  Default: a new, empty store.
    skip_checks : bool
        If True, skip the plan consistency checks.
    """

    def __init__(
        self,
        config: FusionConfig,
        algorithm: Optional[FusionAlgorithm] = None,
        io: Any = None,
        store: Optional[ImageStore] = None,
        skip_checks: bool = False,
    ):
        config.validate()
        self.cfg = config
        self.io = io if io is not None else RasterIO(config.data_dir)
        self.store = store if store is not None else ImageStore()
        self.skip_checks = skip_checks
        self.high_tag, self.low_tag = resolve_roles(
            config.images, config.high_tag, config.low_tag
        )

        if algorithm is None:
            entry = get_method(config.method)
            algorithm = instantiate_algorithm(
                entry, n_jobs=config.n_jobs, **config.algorithm_params
            )
        self.algorithm = algorithm
        validate_method_policy(
            {"name": algorithm.name, "supports_single_pair": algorithm.supports_single_pair},
            config.singlepair_mode,
        )
        if config.existing_policy is ExistingPolicy.FORCE and not algorithm.supports_single_pair:
            raise ConfigurationError(
                f"Existing policy 'force' predicts an image from itself, which "
                f"{algorithm.name} cannot do with a single pair."
            )

        self.entries: MultiResCollection[ImageEntry] = MultiResCollection()
        for e in config.images:
            self.entries.set(e.tag, e.date, e)
        self.geoinfos: MultiResCollection[GeoInfo] = MultiResCollection()

        self.report = TaskReport()
        self.plan_: Optional[TaskPlan] = None
        self.base_mask: Optional[np.ndarray] = None
        self.valid_sets = RoleValidSets()

    # ------------------------------------------------------------------ #
    #  Planning                                                            #
    # ------------------------------------------------------------------ #

    def plan(self) -> TaskPlan:
        """Decompose the inputs into jobs (no images are read)."""
        if self.plan_ is None:
            self.plan_ = decompose(
                self.entries.get_dates(self.high_tag),
                self.entries.get_dates(self.low_tag),
                self.cfg.pred_dates,
                mode=self.cfg.singlepair_mode,
                min_pairs=self.algorithm.min_pairs,
                single_pair_capable=self.algorithm.supports_single_pair,
                double_pair_mode=self.cfg.use_double_pair_mode,
            )
            if not self.skip_checks:
                run_all_checks(self.plan_, verbose=self.cfg.verbose)
        return self.plan_

    # ------------------------------------------------------------------ #
    #  Main entry point                                                    #
    # ------------------------------------------------------------------ #

    def run(self) -> TaskReport:
        """
        Execute all jobs and the handling of already existing dates.

        Returns
        -------
        TaskReport
            One record per requested date and anchor combination.
        """
        t0 = time.time()
        plan = self.plan()
        self._prepare(plan)

        if self.cfg.verbose:
            print(f"\n{'='*60}")
            print(f"  Fusion task: {self.algorithm.name}  "
                  f"(high '{self.high_tag}', low '{self.low_tag}')")
            print(f"{'='*60}")
            print(task_overview(plan))

        self._report_unscheduled(plan)

        self.algorithm.bind(self.store, self.high_tag, self.low_tag)
        if self.algorithm.stateful and self.cfg.model_path:
            self.algorithm.load_model(self.cfg.model_path, self.cfg.dict_reuse)

        for idx, job in enumerate(plan.jobs):
            self._run_job(idx, job, plan.jobs[idx + 1:])

        self._handle_existing(plan)

        if self.algorithm.stateful and self.cfg.save_model_path:
            self.algorithm.save_model(self.cfg.save_model_path)

        if self.cfg.verbose:
            elapsed = time.time() - t0
            print(f"\n✓ Fusion task completed in {elapsed:.1f}s  {self.report.counts()}")
        return self.report

    # ------------------------------------------------------------------ #
    #  Preparation                                                         #
    # ------------------------------------------------------------------ #

    def _prepare(self, plan: TaskPlan) -> None:
        """Read metadata of every image a job uses, validate it, load masks."""
        used: Set[Tuple[str, int]] = set()
        for job in plan.jobs:
            for a in job.anchors:
                used.add((self.high_tag, a))
                used.add((self.low_tag, a))
            for d in job.dates:
                used.add((self.low_tag, d))
        for d in plan.existing:
            used.add((self.high_tag, d))

        for tag, date in sorted(used):
            try:
                self.geoinfos.set(tag, date, self.io.read_geoinfo(self.entries.get(tag, date)))
            except OSError as exc:
                warnings.warn(f"Could not read metadata of '{tag}' image at date {date}: {exc}")
        if len(self.geoinfos):
            ref = validate_alignment([(key, self.geoinfos.get(*key)) for key in self.geoinfos])
            self.base_mask = self._load_base_mask(ref)

        self.valid_sets = resolve_valid_sets(self.cfg.masks.parsed_ranges())

    def _load_base_mask(self, ref: GeoInfo) -> Optional[np.ndarray]:
        if not self.cfg.masks.mask_files:
            return None
        crop = self.cfg.images[0].crop
        masks = [self.io.load_mask(mf, crop) for mf in self.cfg.masks.mask_files]
        return combine_mask_images(masks, ref.count, (ref.height, ref.width))

    def _report_unscheduled(self, plan: TaskPlan) -> None:
        for d in plan.missing:
            err = MissingInputError(d)
            warnings.warn(str(err))
            self.report.add(d, PredCase.NO_INPUT, Status.MISSING, reason=str(err))
        for d, reason in sorted(plan.skipped.items()):
            if plan.cases[d] is PredCase.NO_INPUT:
                continue
            warnings.warn(f"Skipping date {d}: {reason}")
            self.report.add(d, plan.cases[d], Status.SKIPPED, reason=reason)

    # ------------------------------------------------------------------ #
    #  Jobs                                                                #
    # ------------------------------------------------------------------ #

    def _ensure_loaded(self, tag: str, date: int, store: Optional[ImageStore] = None) -> np.ndarray:
        """Load an image into the store unless it is there already."""
        store = store if store is not None else self.store
        if not store.has(tag, date):
            array, geo = self.io.load(self.entries.get(tag, date))
            store.set(tag, date, array)
            if not self.geoinfos.has(tag, date):
                self.geoinfos.set(tag, date, geo)
        return store.get(tag, date)

    def _nodata(self, tag: str, date: int) -> Optional[float]:
        if not self.cfg.masks.use_nodata or not self.geoinfos.has(tag, date):
            return None
        return self.geoinfos.get(tag, date).nodata

    def _image_mask(self, base: Optional[np.ndarray], role: str, tag: str,
                    date: int, image: np.ndarray) -> Optional[np.ndarray]:
        return compose_mask(
            base, image, self.valid_sets.for_role(role),
            nodata=self._nodata(tag, date),
            use_nodata=self.cfg.masks.use_nodata,
        )

    def _pair_mask(self, anchors: Sequence[int]) -> Optional[np.ndarray]:
        mask = self.base_mask
        for a in anchors:
            mask = self._image_mask(mask, "high", self.high_tag, a, self.store.get(self.high_tag, a))
            mask = self._image_mask(mask, "low", self.low_tag, a, self.store.get(self.low_tag, a))
        return mask

    def _run_job(self, idx: int, job: Job, later_jobs: Sequence[Job]) -> None:
        plan = self.plan_
        if self.cfg.verbose:
            print(f"\n  [{idx + 1}/{len(plan.jobs)}] {job}")

        try:
            for a in job.anchors:
                self._ensure_loaded(self.high_tag, a)
                self._ensure_loaded(self.low_tag, a)
        except OSError as exc:
            msg = f"Could not load anchor images of {job}: {exc}"
            warnings.warn(msg)
            for d in job.dates:
                self.report.add(d, plan.cases[d], Status.FAILED, anchors=job.anchors, reason=msg)
            self._evict_anchors(job, later_jobs)
            return

        pair_mask = self._pair_mask(job.anchors)
        self.algorithm.set_anchors(job.anchors)
        if self.algorithm.stateful:
            try:
                self.algorithm.train(job.anchors, pair_mask)
            except NotFoundError:
                raise
            except Exception as exc:
                msg = f"Training on {job.anchors} failed: {exc}"
                warnings.warn(msg)
                for d in job.dates:
                    self.report.add(d, plan.cases[d], Status.FAILED, anchors=job.anchors, reason=msg)
                self._evict_anchors(job, later_jobs)
                return

        for d in job.dates:
            self._predict_date(job, d, pair_mask)

        self._evict_anchors(job, later_jobs)

    def _predict_date(self, job: Job, date: int, pair_mask: Optional[np.ndarray]) -> None:
        case = self.plan_.cases[date]
        try:
            low = self._ensure_loaded(self.low_tag, date)
        except OSError as exc:
            msg = f"Could not load the low resolution image of date {date}: {exc}"
            warnings.warn(msg)
            self.report.add(date, case, Status.FAILED, anchors=job.anchors, reason=msg)
            return

        try:
            pred_mask = self._image_mask(pair_mask, "low", self.low_tag, date, low)
            try:
                result = self.algorithm.predict(date, pred_mask)
            except NotFoundError:
                raise
            except Exception as exc:
                msg = f"Prediction of date {date} from {job.anchors} failed: {exc}"
                warnings.warn(msg)
                self.report.add(date, case, Status.FAILED, anchors=job.anchors, reason=msg)
                return
            self._write_prediction(date, case, job.anchors, result, pred_mask)
        finally:
            self.store.remove(self.low_tag, date)

    def _evict_anchors(self, job: Job, later_jobs: Sequence[Job]) -> None:
        """Drop anchor images that no later job refers to."""
        still_needed = {a for j in later_jobs for a in j.anchors}
        for a in job.anchors:
            if a in still_needed:
                continue
            for tag in (self.high_tag, self.low_tag):
                if self.store.has(tag, a):
                    self.store.remove(tag, a)

    # ------------------------------------------------------------------ #
    #  Output                                                              #
    # ------------------------------------------------------------------ #

    def _output_name(self, date: int, anchors: Tuple[int, ...], origin: Tuple[str, int]) -> str:
        out = self.cfg.output
        path = self.entries.get(*origin).path
        explicit = self.cfg.pred_filenames.get(date)
        if explicit is not None:
            if len(self.plan_.jobs_for_date(date)) > 1:
                p = Path(explicit)
                return f"{p.stem}_from_{anchors[0]}{p.suffix}"
            return explicit
        date3 = anchors[1] if len(anchors) > 1 else None
        return output_filename(path, out.prefix, out.postfix, anchors[0], date, date3, out.out_format)

    def _mask_name(self, out_name: str) -> str:
        p = Path(out_name)
        return f"{self.cfg.output.mask_prefix}{p.stem}{self.cfg.output.mask_postfix}{p.suffix}"

    def _write_prediction(
        self,
        date: int,
        case: PredCase,
        anchors: Tuple[int, ...],
        result: np.ndarray,
        mask: Optional[np.ndarray],
        origin: Optional[Tuple[str, int]] = None,
    ) -> None:
        """
        Synthesise and substitute nodata, write image (and mask), record.

        Georeference, declared nodata and file name follow the *origin* image,
        by default the low resolution image of *date*.
        """
        origin = origin or (self.low_tag, date)
        geo = self.geoinfos.get(*origin).with_count(
            result.shape[0], result.dtype.name
        )

        counts: Dict[str, int] = {}
        if mask is not None:
            full = expand_mask(mask, result.shape)
            nodata = geo.nodata
            if nodata is None:
                nodata = find_nodata_value(result, full)
                if nodata is not None:
                    geo = geo.with_nodata(nodata)
            if nodata is not None:
                result = result.copy()
                result[~full] = nodata
            states = classify_pixel_states(full, True, found=full, prefer_fill_over_nodata=False)
            c = count_states(states)
            counts = {"pixels_predicted": c["interpolated"], "pixels_nodata": c["nodata"]}

        out_dir = Path(self.cfg.output.output_dir)
        out_name = self._output_name(date, anchors, origin)
        try:
            written = self.io.write(result, geo, out_dir / out_name, self.cfg.output.out_format)
        except OSError as exc:
            msg = f"Could not write prediction of date {date}: {exc}"
            warnings.warn(msg)
            self.report.add(date, case, Status.FAILED, anchors=anchors, reason=msg,
                            pixel_counts=counts)
            return

        mask_path, reason = None, ""
        if self.cfg.output.write_masks and mask is not None:
            mask_geo = geo.with_count(mask.shape[0], "uint8").with_nodata(None)
            try:
                mask_path = str(self.io.write(
                    mask, mask_geo, out_dir / self._mask_name(out_name), self.cfg.output.out_format
                ))
            except OSError as exc:
                reason = f"Mask not written: {exc}"
                warnings.warn(reason)

        if self.cfg.verbose:
            print(f"    → {date}: {written}")
        self.report.add(date, case, Status.WRITTEN, anchors=anchors, output_path=str(written),
                        mask_path=mask_path, reason=reason, pixel_counts=counts)

    # ------------------------------------------------------------------ #
    #  Dates that already have a high resolution image                     #
    # ------------------------------------------------------------------ #

    def _handle_existing(self, plan: TaskPlan) -> None:
        policy = self.cfg.existing_policy
        for d in plan.existing:
            case = plan.cases[d]
            if policy is ExistingPolicy.IGNORE:
                self.report.add(d, case, Status.SKIPPED,
                                reason="High resolution image exists (policy 'ignore').")
            elif policy is ExistingPolicy.COPY:
                self._copy_existing(d, case)
            else:
                self._force_predict(d, case)

    def _copy_existing(self, date: int, case: PredCase) -> None:
        entry = self.entries.get(self.high_tag, date)
        out = self.cfg.output
        name = self.cfg.pred_filenames.get(date) or output_filename(
            entry.path, out.prefix, out.postfix, date, date, date
        )
        try:
            written = self.io.copy(entry.path, Path(out.output_dir) / name)
        except OSError as exc:
            msg = f"Could not copy the existing image of date {date}: {exc}"
            warnings.warn(msg)
            self.report.add(date, case, Status.FAILED, anchors=(date,), reason=msg)
            return
        if self.cfg.verbose:
            print(f"    → {date}: copied to {written}")
        self.report.add(date, case, Status.COPIED, anchors=(date,), output_path=str(written))

    def _force_predict(self, date: int, case: PredCase) -> None:
        """Predict an existing high resolution image from itself."""
        private = ImageStore()
        try:
            high = self._ensure_loaded(self.high_tag, date, store=private)
        except OSError as exc:
            msg = f"Could not load the existing image of date {date}: {exc}"
            warnings.warn(msg)
            self.report.add(date, case, Status.FAILED, anchors=(date,), reason=msg)
            return
        private.set(self.low_tag, date, high)

        mask = self._image_mask(self.base_mask, "high", self.high_tag, date, high)
        self.algorithm.bind(private, self.high_tag, self.low_tag)
        try:
            self.algorithm.set_anchors((date,))
            if self.algorithm.stateful:
                self.algorithm.train((date,), mask)
            result = self.algorithm.predict(date, mask)
        except NotFoundError:
            raise
        except Exception as exc:
            msg = f"Prediction of existing date {date} from itself failed: {exc}"
            warnings.warn(msg)
            self.report.add(date, case, Status.FAILED, anchors=(date,), reason=msg)
            return
        finally:
            self.algorithm.bind(self.store, self.high_tag, self.low_tag)
        self._write_prediction(date, case, (date,), result, mask, origin=(self.high_tag, date))
