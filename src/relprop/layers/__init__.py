# src/relprop/layers/__init__.py
"""
Layer vocabulary: kind tags for torch modules plus the structural modules
(Scale, Parallel, SkipConnection) that torch.nn does not provide.
"""

from relprop.layers.modules import CONNECTIONS, Parallel, Scale, SkipConnection, combine
from relprop.layers.kinds import (
    LayerKind,
    PARAMETERIZED_KINDS,
    POOLING_KINDS,
    NORMALIZATION_KINDS,
    PASSTHROUGH_KINDS,
    RESHAPING_KINDS,
    CONTAINER_KINDS,
    LEAF_KINDS,
    find_layer_kind,
    layer_kind,
    has_parameters,
)

__all__ = [
    "CONNECTIONS",
    "Parallel",
    "Scale",
    "SkipConnection",
    "combine",
    "LayerKind",
    "PARAMETERIZED_KINDS",
    "POOLING_KINDS",
    "NORMALIZATION_KINDS",
    "PASSTHROUGH_KINDS",
    "RESHAPING_KINDS",
    "CONTAINER_KINDS",
    "LEAF_KINDS",
    "find_layer_kind",
    "layer_kind",
    "has_parameters",
]
