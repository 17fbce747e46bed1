# src/relprop/rules/rules.py
"""
LRP propagation rules.

Each rule is an immutable configuration object carrying only its own
hyperparameters. How a rule acts on a layer is described by a handful of
hooks, shared by the generic z-rule of the step engine:

    R_j = a~_j * Σ_k w~_jk * R_k / stabilize(Σ_i a~_i * w~_ik + b~_k)

    a~   = rule.modify_input(a)
    w~   = rule.modify_weight(w)
    b~   = rule.modify_bias(b)
    stabilize = rule.modify_denominator

Rules that need several modified copies of a layer (ZBox, AlphaBeta, ZPlus,
GeneralizedGamma) declare a PAIR or QUAD decomposition and are evaluated by
dedicated steps in relprop.engine.step.

Besides the hooks, every rule declares statically which layer kinds it may
be applied to (``compatible_kinds``), whether it is restricted to layers
that read the model input (``first_layer_only``), and whether it conserves
relevance on bias-free layers (``conservative``).

Propagation Rules:
- ZeroRule (LRP-0): unmodified weights
- EpsilonRule (LRP-ε): denominator shifted by ε in the direction of its sign
- GammaRule (LRP-γ): positive parameters boosted by (1 + γ)
- ZBoxRule: bounded input domain [low, high], for the input layer
- AlphaBetaRule (LRP-αβ): positive and negative contributions weighted separately
- WSquareRule: squared weights, input ignored
- FlatRule: uniform weights, input ignored
- ZPlusRule (LRP-z⁺): AlphaBetaRule(1, 0)
- GeneralizedGammaRule: four-term gamma rule for signed activations
- LayerNormRule: normalization with the standard deviation held constant
- PassRule: relevance passed through unchanged

Reference:
    Montavon, G., Binder, A., Lapuschkin, S., Samek, W., & Müller, K. R. (2019).
    Layer-wise Relevance Propagation: An Overview. Explainable AI: Interpreting,
    Explaining and Visualizing Deep Learning. Springer.

    Ali, A., Schnake, T., Eberle, O., Montavon, G., Müller, K. R., & Wolf, L. (2022).
    XAI for Transformers: Better Explanations through Conservative Propagation. ICML.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, FrozenSet, Tuple, Union

import torch

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import (
    LayerKind,
    LEAF_KINDS,
    NORMALIZATION_KINDS,
    PARAMETERIZED_KINDS,
    PASSTHROUGH_KINDS,
)
from relprop.rules.stabilize import (
    DEFAULT_EPSILON,
    DEFAULT_GAMMA,
    DEFAULT_STABILIZER,
    SPLIT_STABILIZER,
    keep_negative,
    keep_positive,
    stabilize_denom,
)


Bound = Union[float, torch.Tensor]


class Decomposition(Enum):
    """How many modified copies of a layer a rule needs."""

    NONE = "none"      # parameters are not used (PassRule, LayerNormRule)
    SINGLE = "single"  # one copy with modified weight and bias
    PAIR = "pair"      # positive part / negative part
    QUAD = "quad"      # positive / negative part, with and without bias


@dataclass(frozen=True)
class LRPRule:
    """Base class of all rules. Defaults describe LRP-0."""

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = LEAF_KINDS - {LayerKind.LAYER_NORM}
    decomposition: ClassVar[Decomposition] = Decomposition.SINGLE
    first_layer_only: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def conservative(self) -> bool:
        """Whether the rule conserves relevance on any bias-free layer, for any input."""
        return True

    def modify_input(self, activation: torch.Tensor) -> torch.Tensor:
        return activation

    def modify_denominator(self, denominator: torch.Tensor) -> torch.Tensor:
        return stabilize_denom(denominator, DEFAULT_STABILIZER)

    def modify_parameters(self, param: torch.Tensor) -> torch.Tensor:
        return param

    def modify_weight(self, weight: torch.Tensor) -> torch.Tensor:
        return self.modify_parameters(weight)

    def modify_bias(self, bias: torch.Tensor) -> torch.Tensor:
        return self.modify_parameters(bias)

    def split_parameters(self, param: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Split a parameter into the parts used by the positive and negative paths."""
        return keep_positive(param), keep_negative(param)


# =============================================================================
# Single-term rules
# =============================================================================

@dataclass(frozen=True)
class ZeroRule(LRPRule):
    """LRP-0: redistribute by each input's share of the output."""


@dataclass(frozen=True)
class EpsilonRule(LRPRule):
    """
    LRP-ε: the denominator is shifted by ε in the direction of its sign.

    Absorbs weak or contradictory contributions; larger ε gives sparser,
    less noisy relevance.
    """

    epsilon: float = DEFAULT_EPSILON

    def __post_init__(self):
        if not self.epsilon > 0:
            raise ConfigurationError(f"EpsilonRule requires epsilon > 0, got {self.epsilon}")

    def modify_denominator(self, denominator: torch.Tensor) -> torch.Tensor:
        return stabilize_denom(denominator, self.epsilon)


@dataclass(frozen=True)
class GammaRule(LRPRule):
    """
    LRP-γ: positive weights and biases are boosted, ``p + γ·max(p, 0)``.

    Not conservative: the boosted denominator can vanish where the original
    one does not, and the stabilizer then absorbs relevance. On layers
    without parameters (pooling, activations) it reduces to LRP-0.
    """

    gamma: float = DEFAULT_GAMMA

    def __post_init__(self):
        if self.gamma < 0:
            raise ConfigurationError(f"GammaRule requires gamma >= 0, got {self.gamma}")

    @property
    def conservative(self) -> bool:
        return False

    def modify_parameters(self, param: torch.Tensor) -> torch.Tensor:
        return param + self.gamma * keep_positive(param)


@dataclass(frozen=True)
class WSquareRule(LRPRule):
    """Squared weights, bias and input ignored."""

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS

    def modify_input(self, activation: torch.Tensor) -> torch.Tensor:
        return torch.ones_like(activation)

    def modify_weight(self, weight: torch.Tensor) -> torch.Tensor:
        return weight ** 2

    def modify_bias(self, bias: torch.Tensor) -> torch.Tensor:
        return torch.zeros_like(bias)


@dataclass(frozen=True)
class FlatRule(LRPRule):
    """Uniform weights, bias and input ignored."""

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS

    def modify_input(self, activation: torch.Tensor) -> torch.Tensor:
        return torch.ones_like(activation)

    def modify_weight(self, weight: torch.Tensor) -> torch.Tensor:
        return torch.ones_like(weight)

    def modify_bias(self, bias: torch.Tensor) -> torch.Tensor:
        return torch.zeros_like(bias)


# =============================================================================
# Multi-term rules
# =============================================================================

@dataclass(frozen=True)
class ZBoxRule(LRPRule):
    """
    Rule for layers whose input lives in a box ``[low, high]``, e.g. pixels.

    Bounds may be scalars or tensors broadcastable to the layer input.
    Only valid for layers that read the model input.
    """

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS
    decomposition: ClassVar[Decomposition] = Decomposition.PAIR
    first_layer_only: ClassVar[bool] = True

    low: Bound = 0.0
    high: Bound = 1.0

    def __post_init__(self):
        low = torch.as_tensor(self.low)
        high = torch.as_tensor(self.high)
        if bool((low > high).any()):
            raise ConfigurationError(
                f"ZBoxRule requires low <= high, got low={self.low}, high={self.high}"
            )

    def modify_denominator(self, denominator: torch.Tensor) -> torch.Tensor:
        return stabilize_denom(denominator, SPLIT_STABILIZER)


@dataclass(frozen=True)
class AlphaBetaRule(LRPRule):
    """
    LRP-αβ: positive contributions weighted by α, negative ones by β.

    Conservative when ``alpha - beta == 1``; other settings are accepted and
    leak or gain relevance.
    """

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS
    decomposition: ClassVar[Decomposition] = Decomposition.QUAD

    alpha: float = 2.0
    beta: float = 1.0

    def __post_init__(self):
        if self.alpha < 0 or self.beta < 0:
            raise ConfigurationError(
                f"AlphaBetaRule requires non-negative alpha and beta, "
                f"got alpha={self.alpha}, beta={self.beta}"
            )

    @property
    def conservative(self) -> bool:
        return math.isclose(self.alpha - self.beta, 1.0)

    def modify_denominator(self, denominator: torch.Tensor) -> torch.Tensor:
        return stabilize_denom(denominator, SPLIT_STABILIZER)


@dataclass(frozen=True)
class ZPlusRule(LRPRule):
    """LRP-z⁺: only positive contributions, identical to AlphaBetaRule(1, 0)."""

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS
    decomposition: ClassVar[Decomposition] = Decomposition.QUAD

    def modify_denominator(self, denominator: torch.Tensor) -> torch.Tensor:
        return stabilize_denom(denominator, SPLIT_STABILIZER)


@dataclass(frozen=True)
class GeneralizedGammaRule(LRPRule):
    """
    Four-term gamma rule for layers with signed inputs and outputs.

    Positive-output relevance flows through ``W + γW⁺`` on positive inputs
    and ``W + γW⁻`` on negative inputs; negative-output relevance takes the
    opposite pairing. Suited to LeakyReLU networks and layers after
    normalization. Not conservative, for the same reason as GammaRule.
    """

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PARAMETERIZED_KINDS
    decomposition: ClassVar[Decomposition] = Decomposition.QUAD

    gamma: float = DEFAULT_GAMMA

    def __post_init__(self):
        if self.gamma < 0:
            raise ConfigurationError(
                f"GeneralizedGammaRule requires gamma >= 0, got {self.gamma}"
            )

    @property
    def conservative(self) -> bool:
        return False

    def split_parameters(self, param: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return (
            param + self.gamma * keep_positive(param),
            param + self.gamma * keep_negative(param),
        )


# =============================================================================
# Parameter-free rules
# =============================================================================

@dataclass(frozen=True)
class LayerNormRule(LRPRule):
    """
    Propagate through LayerNorm treating the standard deviation as constant.

    The normalization then reduces to mean-centering followed by a fixed
    rescaling, through which relevance is propagated with LRP-0.
    """

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = frozenset({LayerKind.LAYER_NORM})
    decomposition: ClassVar[Decomposition] = Decomposition.NONE


@dataclass(frozen=True)
class PassRule(LRPRule):
    """Pass relevance through unchanged, reshaped to the layer input."""

    compatible_kinds: ClassVar[FrozenSet[LayerKind]] = PASSTHROUGH_KINDS | NORMALIZATION_KINDS
    decomposition: ClassVar[Decomposition] = Decomposition.NONE


ALL_RULES = (
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
