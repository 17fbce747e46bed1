# src/relprop/rules/__init__.py
"""
LRP rules, the parameter modifiers that build a rule's modified layers,
and the rule/layer compatibility checker.
"""

from relprop.rules.stabilize import (
    DEFAULT_EPSILON,
    DEFAULT_GAMMA,
    DEFAULT_STABILIZER,
    SPLIT_STABILIZER,
    keep_negative,
    keep_positive,
    stabilize_denom,
)
from relprop.rules.rules import (
    ALL_RULES,
    Decomposition,
    LRPRule,
    ZeroRule,
    EpsilonRule,
    GammaRule,
    WSquareRule,
    FlatRule,
    ZBoxRule,
    AlphaBetaRule,
    ZPlusRule,
    GeneralizedGammaRule,
    LayerNormRule,
    PassRule,
)
from relprop.rules.modifiers import (
    KEEP_NEGATIVE,
    KEEP_POSITIVE,
    ModifiedLayer,
    PairedLayers,
    QuadLayers,
    copy_layer,
    modify_bias,
    modify_layer,
    modify_parameters,
    modify_weight,
)
from relprop.rules.compat import check_compatible, is_compatible

__all__ = [
    "DEFAULT_EPSILON",
    "DEFAULT_GAMMA",
    "DEFAULT_STABILIZER",
    "SPLIT_STABILIZER",
    "keep_negative",
    "keep_positive",
    "stabilize_denom",
    "ALL_RULES",
    "Decomposition",
    "LRPRule",
    "ZeroRule",
    "EpsilonRule",
    "GammaRule",
    "WSquareRule",
    "FlatRule",
    "ZBoxRule",
    "AlphaBetaRule",
    "ZPlusRule",
    "GeneralizedGammaRule",
    "LayerNormRule",
    "PassRule",
    "KEEP_NEGATIVE",
    "KEEP_POSITIVE",
    "ModifiedLayer",
    "PairedLayers",
    "QuadLayers",
    "copy_layer",
    "modify_bias",
    "modify_layer",
    "modify_parameters",
    "modify_weight",
    "check_compatible",
    "is_compatible",
]
