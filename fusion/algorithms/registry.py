"""
fusion.algorithms.registry
==========================
Centralised catalogue of every fusion method the orchestrator can drive.

Each entry describes:
  • class path (``None`` for methods that must be registered at runtime)
  • minimum number of pair dates and single-pair capability
  • statefulness (cross-job training / model persistence)
  • default parameters

Methods
-------
==========  ========  ===========  ========  ===================================
Name        Pairs     Single pair  Stateful  Notes
==========  ========  ===========  ========  ===================================
difference  1         yes          no        Built-in temporal difference
starfm      1         yes          no        Weighted compositing
fitfc       1         yes          no        Regression + residual compensation
estarfm     2         no           no        Needs two pairs per job
spstfm      2         no           yes       Dictionary learning
==========  ========  ===========  ========  ===================================
"""

from __future__ import annotations

import importlib
from typing import Any, Dict, Optional, Type

from ..config import ConfigurationError, SinglePairMode
from .base import FusionAlgorithm


# ======================================================================== #
#  Registry structure                                                       #
# ======================================================================== #

def _entry(
    cls_path: Optional[str],
    name: str,
    min_pairs: int = 1,
    supports_single_pair: bool = True,
    stateful: bool = False,
    default_params: Optional[Dict] = None,
    notes: str = "",
) -> Dict[str, Any]:
    return {
        "cls_path": cls_path,
        "name": name,
        "min_pairs": min_pairs,
        "supports_single_pair": supports_single_pair,
        "stateful": stateful,
        "default_params": default_params or {},
        "notes": notes,
    }


# ======================================================================== #
#  The registry                                                             #
# ======================================================================== #

FUSION_METHODS: Dict[str, Dict[str, Any]] = {
    "difference": _entry(
        "fusion.algorithms.difference.TemporalDifferenceFusor", "difference",
        notes="Adds the low resolution change to the high resolution anchor.",
    ),
    "starfm": _entry(
        None, "starfm",
        default_params={
            "window_size": 51,
            "number_classes": 40,
            "spectral_uncertainty": 50,
            "temporal_uncertainty": 50,
            "use_strict_filtering": False,
            "use_temp_diff_for_weights": True,
        },
        notes="Uncertainties default to 1 for 8 bit images.",
    ),
    "fitfc": _entry(
        None, "fitfc",
        default_params={
            "window_size": 51,
            "n_neighbors": 10,
            "resolution_factor": 30,
        },
    ),
    "estarfm": _entry(
        None, "estarfm",
        min_pairs=2, supports_single_pair=False,
        default_params={"window_size": 51, "number_classes": 4},
        notes="Double-pair only; single-pair modes 'mixed' and 'all' are rejected.",
    ),
    "spstfm": _entry(
        None, "spstfm",
        min_pairs=2, supports_single_pair=False, stateful=True,
        default_params={
            "dict_size": 256,
            "n_training_samples": 2000,
            "patch_size": 7,
            "patch_overlap": 2,
            "min_train_iter": 10,
            "max_train_iter": 20,
        },
        notes="Learns a dictionary per job; can load / save it between tasks.",
    ),
}


# ======================================================================== #
#  Public helpers                                                           #
# ======================================================================== #

def get_method(name: str) -> Dict[str, Any]:
    """Look up a method entry by its unique name."""
    try:
        return FUSION_METHODS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Method '{name}' not found in registry. "
            f"Available: {sorted(FUSION_METHODS)}"
        ) from None


def register_method(cls: Type[FusionAlgorithm], **default_params) -> Dict[str, Any]:
    """
    Register (or replace) a method implemented outside this package.

    The capabilities are taken from the class attributes of *cls*.  When
    no *default_params* are given, those of an existing entry with the same
    name are kept.
    """
    previous = FUSION_METHODS.get(cls.name.lower(), {})
    entry = _entry(
        f"{cls.__module__}.{cls.__qualname__}", cls.name,
        min_pairs=cls.min_pairs,
        supports_single_pair=cls.supports_single_pair,
        stateful=cls.stateful,
        default_params=default_params or previous.get("default_params"),
        notes=previous.get("notes", ""),
    )
    entry["cls"] = cls
    FUSION_METHODS[cls.name.lower()] = entry
    return entry


def validate_method_policy(entry: Dict[str, Any], mode: SinglePairMode) -> None:
    """Reject single-pair modes for double-pair-only methods."""
    mode = SinglePairMode(mode)
    if not entry["supports_single_pair"] and mode is not SinglePairMode.IGNORE:
        raise ConfigurationError(
            f"{entry['name']} only predicts between two pair dates, so "
            f"single-pair mode '{mode.value}' is not supported. Use 'ignore'."
        )


def instantiate_algorithm(entry: Dict[str, Any], n_jobs: int = 1, **overrides) -> FusionAlgorithm:
    """
    Dynamically import and instantiate a method from its registry entry.

    Parameters
    ----------
    entry : dict
        As returned by :func:`get_method`.
    n_jobs : int
        Worker count passed through to the method.
    **overrides
        Override any default parameter.
    """
    cls = entry.get("cls")
    if cls is None:
        if entry["cls_path"] is None:
            raise ConfigurationError(
                f"No implementation is available for '{entry['name']}'. "
                f"Provide one with register_method()."
            )
        cls = _import_class(entry["cls_path"])
    params = {**entry["default_params"], **overrides}
    return cls(n_jobs=n_jobs, **params)


def _import_class(dotted_path: str):
    """Import a class from a dotted module path like 'fusion.algorithms.difference.X'."""
    parts = dotted_path.rsplit(".", 1)
    if len(parts) != 2:
        raise ConfigurationError(f"Invalid class path: {dotted_path}")
    module_path, class_name = parts
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(
            f"Cannot import module '{module_path}'. "
            f"Is the package installed?  ({e})"
        ) from e
    return getattr(module, class_name)
