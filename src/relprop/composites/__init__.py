# src/relprop/composites/__init__.py
"""
Composites assign rules to layers; presets cover the common configurations.
"""

from relprop.composites.primitives import (
    Composite,
    CompositePrimitive,
    FirstLayerMap,
    FirstLayerTypeMap,
    FirstNTypeMap,
    GlobalMap,
    GlobalTypeMap,
    LastLayerMap,
    LastLayerTypeMap,
    LayerMap,
    NameMap,
    RangeMap,
    RangeTypeMap,
    default_rule,
    key_matches,
    rules_for_layers,
)
from relprop.composites.presets import (
    PRESETS,
    epsilon_alpha2_beta1,
    epsilon_alpha2_beta1_flat,
    epsilon_flat,
    epsilon_gamma_box,
    epsilon_plus,
    epsilon_plus_flat,
)

__all__ = [
    "Composite",
    "CompositePrimitive",
    "FirstLayerMap",
    "FirstLayerTypeMap",
    "FirstNTypeMap",
    "GlobalMap",
    "GlobalTypeMap",
    "LastLayerMap",
    "LastLayerTypeMap",
    "LayerMap",
    "NameMap",
    "RangeMap",
    "RangeTypeMap",
    "default_rule",
    "key_matches",
    "rules_for_layers",
    "PRESETS",
    "epsilon_alpha2_beta1",
    "epsilon_alpha2_beta1_flat",
    "epsilon_flat",
    "epsilon_gamma_box",
    "epsilon_plus",
    "epsilon_plus_flat",
]
