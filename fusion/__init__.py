"""
Fusion: orchestration of time-series image fusion.

Flow:
  dated high/low resolution images → pair dates → job decomposition
  → load anchors → masks → train → predict → nodata → write → evict

Modules
-------
config        : Configuration dataclasses, enums and range-string parsing
intervals     : Interval / IntervalSet algebra for valid value ranges
store         : Resolution-tagged image store (tag, date) → image
masks         : Mask composition, quality layers, nodata synthesis
ingestion     : rasterio I/O, alignment validation, output file names
jobs          : Date classification and job decomposition
algorithms/   : FusionAlgorithm interface, built-in method, registry
orchestrator  : FusionTask, executes jobs with bounded memory
pixelstate    : Per-pixel state classification
interpolation : InterpolationTask, gap filling over the time series
export        : TaskReport, metadata, CSV export, task overview
checks        : Task plan consistency assertions
"""

__version__ = "0.1.0"
