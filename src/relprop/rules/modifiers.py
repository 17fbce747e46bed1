# src/relprop/rules/modifiers.py
"""
Build the modified layers a rule propagates through.

All functions are pure: the original layer is never touched, modified
layers are deep copies with substituted parameters, so stride, padding,
dilation, groups and broadcasting layout carry over unchanged.

Depending on the rule's decomposition, modify_layer returns:
    - None for parameter-free layers and parameter-free rules
    - a single layer (Zero, Epsilon, Gamma, WSquare, Flat)
    - PairedLayers (ZBox)
    - QuadLayers (AlphaBeta, ZPlus, GeneralizedGamma)

Example:
    >>> layer = nn.Linear(4, 3)
    >>> modify_layer(GammaRule(0.25), layer).weight   # W + 0.25 * max(W, 0)
    >>> modify_layer("keep_positive", layer, keep_bias=False)
"""

import copy
from dataclasses import dataclass
from typing import Optional, Union

import torch
import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import find_layer_kind, has_parameters
from relprop.rules.rules import Decomposition, LRPRule
from relprop.rules.stabilize import keep_negative, keep_positive


# Named presets accepted by modify_layer in place of a rule
KEEP_POSITIVE = "keep_positive"
KEEP_NEGATIVE = "keep_negative"
PRESETS = (KEEP_POSITIVE, KEEP_NEGATIVE)


@dataclass(frozen=True)
class PairedLayers:
    """Two-term decomposition: positive and negative parameter parts."""

    positive: nn.Module
    negative: nn.Module


@dataclass(frozen=True)
class QuadLayers:
    """
    Four-term decomposition.

    The left pair computes the positive-output path: ``left_pos`` is applied
    to positive inputs and carries the positive-path bias, ``left_neg`` to
    negative inputs without bias. The right pair computes the
    negative-output path: ``right_neg`` on positive inputs with the
    negative-path bias, ``right_pos`` on negative inputs without bias.
    """

    left_pos: nn.Module
    left_neg: nn.Module
    right_pos: nn.Module
    right_neg: nn.Module


ModifiedLayer = Optional[Union[nn.Module, PairedLayers, QuadLayers]]


def modify_parameters(rule: LRPRule, param: torch.Tensor) -> torch.Tensor:
    """Apply the rule's generic parameter transform."""
    return rule.modify_parameters(param)


def modify_weight(rule: LRPRule, weight: torch.Tensor) -> torch.Tensor:
    """Apply the rule's weight transform."""
    return rule.modify_weight(weight)


def modify_bias(rule: LRPRule, bias: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
    """Apply the rule's bias transform; a missing bias stays missing."""
    if bias is None:
        return None
    return rule.modify_bias(bias)


def _zero_bias(bias: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
    return None if bias is None else torch.zeros_like(bias)


def copy_layer(
    layer: nn.Module,
    weight: torch.Tensor,
    bias: Optional[torch.Tensor]
) -> nn.Module:
    """
    Copy a parameterized layer, substituting its weight and bias.

    The copy's parameters do not require gradients; only the input is ever
    differentiated during propagation.

    Args:
        layer: Linear, convolution or Scale layer.
        weight: New weight, same shape as the original.
        bias: New bias, or None if the layer has no bias.

    Returns:
        The new layer.
    """
    new_layer = copy.deepcopy(layer)
    with torch.no_grad():
        new_layer.weight = nn.Parameter(weight.detach().clone(), requires_grad=False)
        if bias is not None:
            new_layer.bias = nn.Parameter(bias.detach().clone(), requires_grad=False)
    return new_layer


def _keep_sign(layer: nn.Module, part, keep_bias: bool) -> nn.Module:
    bias = layer.bias
    if bias is not None:
        bias = part(bias) if keep_bias else torch.zeros_like(bias)
    return copy_layer(layer, part(layer.weight), bias)


def modify_layer(
    rule: Union[LRPRule, str],
    layer: nn.Module,
    keep_bias: bool = True
) -> ModifiedLayer:
    """
    Build the modified layer(s) for a rule.

    Args:
        rule: An LRPRule, or one of the presets "keep_positive" /
            "keep_negative" which keep only non-negative / non-positive
            parameters.
        layer: Layer to modify. Never mutated.
        keep_bias: If False, the (modified) bias is replaced by zeros.
            Applies to single-term rules and presets.

    Returns:
        None, a layer, PairedLayers or QuadLayers (see module docstring).

    Raises:
        ConfigurationError: If rule is an unknown preset name.
    """
    kind = find_layer_kind(layer)
    if kind is None or not has_parameters(kind):
        return None

    if isinstance(rule, str):
        if rule == KEEP_POSITIVE:
            return _keep_sign(layer, keep_positive, keep_bias)
        if rule == KEEP_NEGATIVE:
            return _keep_sign(layer, keep_negative, keep_bias)
        raise ConfigurationError(
            f"Unknown parameter preset '{rule}'. Must be one of: {list(PRESETS)}"
        )

    weight, bias = layer.weight, layer.bias

    if rule.decomposition is Decomposition.NONE:
        return None

    if rule.decomposition is Decomposition.SINGLE:
        new_bias = modify_bias(rule, bias)
        if not keep_bias:
            new_bias = _zero_bias(new_bias)
        return copy_layer(layer, modify_weight(rule, weight), new_bias)

    weight_pos, weight_neg = rule.split_parameters(weight)
    if bias is None:
        bias_pos = bias_neg = None
    else:
        bias_pos, bias_neg = rule.split_parameters(bias)

    if rule.decomposition is Decomposition.PAIR:
        return PairedLayers(
            positive=copy_layer(layer, weight_pos, bias_pos),
            negative=copy_layer(layer, weight_neg, bias_neg),
        )

    return QuadLayers(
        left_pos=copy_layer(layer, weight_pos, bias_pos),
        left_neg=copy_layer(layer, weight_neg, _zero_bias(bias_neg)),
        right_pos=copy_layer(layer, weight_pos, _zero_bias(bias_pos)),
        right_neg=copy_layer(layer, weight_neg, bias_neg),
    )
