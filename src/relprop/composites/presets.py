# src/relprop/composites/presets.py
"""
Preset composites following the recommendations of Montavon et al. (2019)
and Kohlbrenner et al. (2020).

All presets share the same skeleton:

    - linear layers use LRP-ε
    - normalization, activation, flatten, dropout and identity layers pass
      relevance through unchanged
    - pooling and Scale layers use the kind default (LRP-0)

and differ in the rule used for convolutions and for the first layer.

Reference:
    Kohlbrenner, M., Bauer, A., Nakajima, S., Binder, A., Samek, W., &
    Lapuschkin, S. (2020). Towards Best Practice in Explaining Neural Network
    Decisions with LRP. IJCNN.
"""

from relprop.composites.primitives import (
    Composite,
    FirstLayerTypeMap,
    GlobalTypeMap,
)
from relprop.layers.kinds import (
    LayerKind,
    NORMALIZATION_KINDS,
    PARAMETERIZED_KINDS,
    PASSTHROUGH_KINDS,
)
from relprop.rules.rules import (
    AlphaBetaRule,
    EpsilonRule,
    FlatRule,
    GammaRule,
    LRPRule,
    PassRule,
    ZBoxRule,
    ZPlusRule,
)
from relprop.rules.stabilize import DEFAULT_EPSILON, DEFAULT_GAMMA


def _base_map(conv_rule: LRPRule, epsilon: float) -> GlobalTypeMap:
    return GlobalTypeMap({
        LayerKind.CONVOLUTION: conv_rule,
        LayerKind.LINEAR: EpsilonRule(epsilon),
        NORMALIZATION_KINDS: PassRule(),
        PASSTHROUGH_KINDS: PassRule(),
    })


def epsilon_gamma_box(
    low=0.0,
    high=1.0,
    epsilon: float = DEFAULT_EPSILON,
    gamma: float = DEFAULT_GAMMA
) -> Composite:
    """
    LRP-γ on convolutions, LRP-ε on linear layers, ZBox on a first
    convolution reading inputs bounded by ``[low, high]``.
    """
    return Composite(
        _base_map(GammaRule(gamma), epsilon),
        FirstLayerTypeMap({LayerKind.CONVOLUTION: ZBoxRule(low, high)}),
    )


def epsilon_plus(epsilon: float = DEFAULT_EPSILON) -> Composite:
    """LRP-z⁺ on convolutions, LRP-ε on linear layers."""
    return Composite(_base_map(ZPlusRule(), epsilon))


def epsilon_alpha2_beta1(epsilon: float = DEFAULT_EPSILON) -> Composite:
    """LRP-α2β1 on convolutions, LRP-ε on linear layers."""
    return Composite(_base_map(AlphaBetaRule(2.0, 1.0), epsilon))


def epsilon_plus_flat(epsilon: float = DEFAULT_EPSILON) -> Composite:
    """Like epsilon_plus, with the flat rule on a first linear or convolution layer."""
    return Composite(
        _base_map(ZPlusRule(), epsilon),
        FirstLayerTypeMap({PARAMETERIZED_KINDS: FlatRule()}),
    )


def epsilon_alpha2_beta1_flat(epsilon: float = DEFAULT_EPSILON) -> Composite:
    """Like epsilon_alpha2_beta1, with the flat rule on the first parameterized layer."""
    return Composite(
        _base_map(AlphaBetaRule(2.0, 1.0), epsilon),
        FirstLayerTypeMap({PARAMETERIZED_KINDS: FlatRule()}),
    )


def epsilon_flat(epsilon: float = DEFAULT_EPSILON) -> Composite:
    """LRP-ε on all convolution and linear layers, flat rule on the first one."""
    return Composite(
        _base_map(EpsilonRule(epsilon), epsilon),
        FirstLayerTypeMap({PARAMETERIZED_KINDS: FlatRule()}),
    )


PRESETS = {
    "epsilon_gamma_box": epsilon_gamma_box,
    "epsilon_plus": epsilon_plus,
    "epsilon_alpha2_beta1": epsilon_alpha2_beta1,
    "epsilon_plus_flat": epsilon_plus_flat,
    "epsilon_alpha2_beta1_flat": epsilon_alpha2_beta1_flat,
    "epsilon_flat": epsilon_flat,
}
