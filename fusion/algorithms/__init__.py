"""Fusion methods and their registry."""

from .base import FusionAlgorithm, cast_to
from .difference import TemporalDifferenceFusor
from .registry import (
    FUSION_METHODS,
    get_method,
    instantiate_algorithm,
    register_method,
    validate_method_policy,
)
