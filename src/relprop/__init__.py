# src/relprop/__init__.py
"""
relprop - Layer-wise Relevance Propagation for PyTorch.

Decomposes a network's output score back to its input with LRP rules,
assigned per layer by composites, through sequential, parallel and residual
architectures. Concept Relevance Propagation (CRP) conditions explanations
on features of an intermediate layer.

Quick Start:
    from relprop import LRP, epsilon_plus

    analyzer = LRP(model, epsilon_plus())
    explanation = analyzer.analyze(x)
    explanation.attribution          # same shape as x

Custom composites:
    from relprop import Composite, GlobalTypeMap, FirstLayerTypeMap
    from relprop import EpsilonRule, GammaRule, ZBoxRule, LayerKind

    composite = Composite(
        GlobalTypeMap({
            LayerKind.CONVOLUTION: GammaRule(),
            LayerKind.LINEAR: EpsilonRule(),
        }),
        FirstLayerTypeMap({LayerKind.CONVOLUTION: ZBoxRule(-1.0, 1.0)}),
    )
"""

from relprop.core import (
    BaseAnalyzer,
    CompositeMeta,
    CompositeRegistry,
    ConfigurationError,
    Explanation,
    LRPError,
    NumericalError,
    ShapeMismatchError,
    default_registry,
    get_default_registry,
)
from relprop.layers import LayerKind, Parallel, Scale, SkipConnection
from relprop.rules import (
    AlphaBetaRule,
    EpsilonRule,
    FlatRule,
    GammaRule,
    GeneralizedGammaRule,
    LayerNormRule,
    LRPRule,
    PassRule,
    WSquareRule,
    ZBoxRule,
    ZeroRule,
    ZPlusRule,
    is_compatible,
    modify_layer,
)
from relprop.engine import Graph, lrp, lrp_, propagate
from relprop.model import canonize, check_lrp_compat, strip_softmax
from relprop.composites import (
    Composite,
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
    epsilon_alpha2_beta1,
    epsilon_alpha2_beta1_flat,
    epsilon_flat,
    epsilon_gamma_box,
    epsilon_plus,
    epsilon_plus_flat,
)
from relprop.analyzers import CRP, LRP, IndexedFeatures, TopNFeatures

__version__ = "0.1.0"

__all__ = [
    # Core
    "BaseAnalyzer",
    "Explanation",
    "LRPError",
    "ConfigurationError",
    "ShapeMismatchError",
    "NumericalError",
    # Registry
    "CompositeRegistry",
    "CompositeMeta",
    "default_registry",
    "get_default_registry",
    # Layers
    "LayerKind",
    "Parallel",
    "Scale",
    "SkipConnection",
    # Rules
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
    "is_compatible",
    "modify_layer",
    # Engine
    "Graph",
    "lrp",
    "lrp_",
    "propagate",
    # Model preparation
    "canonize",
    "check_lrp_compat",
    "strip_softmax",
    # Composites
    "Composite",
    "LayerMap",
    "GlobalMap",
    "RangeMap",
    "FirstLayerMap",
    "LastLayerMap",
    "GlobalTypeMap",
    "RangeTypeMap",
    "FirstLayerTypeMap",
    "LastLayerTypeMap",
    "FirstNTypeMap",
    "NameMap",
    "epsilon_gamma_box",
    "epsilon_plus",
    "epsilon_alpha2_beta1",
    "epsilon_plus_flat",
    "epsilon_alpha2_beta1_flat",
    "epsilon_flat",
    # Analyzers
    "LRP",
    "CRP",
    "TopNFeatures",
    "IndexedFeatures",
]
