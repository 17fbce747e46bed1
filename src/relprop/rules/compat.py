# src/relprop/rules/compat.py
"""
Rule/layer compatibility.

Compatibility is a static property: each rule declares the layer kinds it
supports, and ZBox-style rules additionally require the layer to read the
model input. Composites check it when rules are assigned, so that a
misconfiguration fails before any relevance is computed.
"""

from typing import Optional

import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import find_layer_kind
from relprop.rules.rules import LRPRule


def is_compatible(rule: LRPRule, layer: nn.Module, first_layer: bool = False) -> bool:
    """
    Check whether a rule may be applied to a layer.

    Args:
        rule: The rule to check.
        layer: The layer it would be applied to.
        first_layer: Whether the layer reads the (bounded) model input.

    Returns:
        True if the rule supports the layer's kind and position.
    """
    kind = find_layer_kind(layer)
    if kind is None or kind not in rule.compatible_kinds:
        return False
    if rule.first_layer_only and not first_layer:
        return False
    return True


def check_compatible(
    rule: LRPRule,
    layer: nn.Module,
    first_layer: bool = False,
    position: Optional[str] = None
) -> None:
    """
    Raise if a rule may not be applied to a layer.

    Args:
        rule: The rule to check.
        layer: The layer it would be applied to.
        first_layer: Whether the layer reads the model input.
        position: Optional description of where the layer sits in the model,
            used in the error message.

    Raises:
        ConfigurationError: If the rule is incompatible with the layer.
    """
    if is_compatible(rule, layer, first_layer=first_layer):
        return

    where = f" at {position}" if position else ""
    kind = find_layer_kind(layer)
    if kind is None:
        reason = "the layer type is not supported"
    elif kind not in rule.compatible_kinds:
        supported = sorted(k.value for k in rule.compatible_kinds)
        reason = f"{rule.name} supports layer kinds {supported}, not '{kind.value}'"
    else:
        reason = f"{rule.name} may only be applied to layers reading the model input"
    raise ConfigurationError(
        f"Rule {rule!r} is incompatible with layer {type(layer).__name__}{where}: {reason}"
    )
