#!/usr/bin/env python3
"""
run_fusion.py
=============
Main entry point for fusion and interpolation tasks.

Usage
-----
  # Fusion task from a JSON config (see FusionConfig)
  python run_fusion.py --config tasks/fusion_config.json

  # Gap filling task from a JSON config (see InterpolationConfig)
  python run_fusion.py --interp tasks/interp_config.json

  # Quiet run without plan checks
  python run_fusion.py --config tasks/fusion_config.json --quiet --skip-checks

Task Flow
---------
::

  images (tag, date)  ──→  pair dates
       │
       ▼
  classify dates  (between pairs / outlier / missing / existing)
       │
       ▼
  decompose into jobs  (ignore | mixed | all)
       │
       ▼
  for job in jobs:
      load anchors → pair mask → train → for date: predict → write → evict
       │
       ▼
  fusion_report.csv  +  metadata.json  +  predicted images
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure the project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fusion.config import ConfigurationError, FusionConfig, InterpolationConfig
from fusion.export import save_dataframe, save_task_metadata
from fusion.interpolation import InterpolationTask
from fusion.orchestrator import FusionTask


# ======================================================================== #
#  CLI                                                                      #
# ======================================================================== #

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Time-series image fusion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    task = parser.add_mutually_exclusive_group(required=True)
    task.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a fusion_config.json file.",
    )
    task.add_argument(
        "--interp",
        type=str,
        default=None,
        help="Path to an interpolation config JSON file.",
    )
    parser.add_argument(
        "--skip-checks",
        action="store_true",
        help="Skip task plan consistency checks.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print warnings and the final summary.",
    )
    return parser.parse_args(argv)


def run_fusion(args) -> int:
    cfg = FusionConfig.load(args.config)
    if args.quiet:
        cfg.verbose = False
    print(f"Loaded config from {args.config}")

    print(f"\nFusion Configuration:")
    print(f"  Method          : {cfg.method}")
    print(f"  Images          : {len(cfg.images)}")
    print(f"  Single-pair mode: {cfg.singlepair_mode.value}")
    print(f"  Existing dates  : {cfg.existing_policy.value}")
    print(f"  Double pair mode: {cfg.use_double_pair_mode}")
    print(f"  Output dir      : {cfg.output.output_dir}")
    print()

    task = FusionTask(cfg, skip_checks=args.skip_checks)
    report = task.run()

    out_dir = Path(cfg.output.output_dir)
    cfg.save(out_dir / "fusion_config.json")
    df = report.to_frame()
    report_path = save_dataframe(df, out_dir / "fusion_report.csv", fmt=cfg.output.report_format)
    save_task_metadata(out_dir, cfg, report, plan=task.plan())

    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    for status, n in report.counts().items():
        print(f"  {status:<8}: {n}")
    if report.failed_dates():
        print(f"  Failed dates : {report.failed_dates()}")
    print(f"\nReport saved to: {report_path}")
    return 1 if report.failed_dates() else 0


def run_interpolation(args) -> int:
    cfg = InterpolationConfig.load(args.interp)
    if args.quiet:
        cfg.verbose = False
    print(f"Loaded interpolation config from {args.interp}")

    stats = InterpolationTask(cfg).run()
    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    if not stats.empty:
        print(stats[["date", "tag", "to_interpolate", "not_interpolated", "status"]]
              .to_string(index=False))
    return 1 if (stats["status"] == "failed").any() else 0


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        if args.config:
            return run_fusion(args)
        return run_interpolation(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
