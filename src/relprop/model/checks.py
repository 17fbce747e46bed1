# src/relprop/model/checks.py
"""
Checks run before a model is analyzed.

LRP needs every layer to be one the engine knows how to propagate through.
These helpers find offending layers up front and produce one error that
lists all of them, instead of failing at the first node mid-analysis.
"""

import copy
import logging
from typing import List, Tuple

import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import SOFTMAX_LAYERS, find_layer_kind
from relprop.layers.modules import Parallel, SkipConnection

logger = logging.getLogger(__name__)


def _walk(module: nn.Module, name: str):
    """Yield (name, leaf) pairs, descending into supported containers."""
    if isinstance(module, nn.Sequential):
        for child_name, child in module.named_children():
            yield from _walk(child, f"{name}.{child_name}" if name else child_name)
    elif isinstance(module, Parallel):
        for i, branch in enumerate(module.branches):
            yield from _walk(branch, f"{name}.branches.{i}" if name else f"branches.{i}")
    elif isinstance(module, SkipConnection):
        yield from _walk(module.layers, f"{name}.layers" if name else "layers")
    else:
        yield name, module


def find_unsupported_layers(model: nn.Module) -> List[Tuple[str, nn.Module]]:
    """
    List the layers of a model that relprop cannot propagate through.

    Args:
        model: The model to check.

    Returns:
        (dotted name, layer) pairs, empty if the model is supported.
    """
    return [
        (name, layer)
        for name, layer in _walk(model, "")
        if find_layer_kind(layer) is None
    ]


def check_lrp_compat(model: nn.Module) -> None:
    """
    Check that every layer of a model is supported.

    Raises:
        ConfigurationError: Listing all unsupported layers. If one of them is
            a softmax, the message suggests strip_softmax.
    """
    unsupported = find_unsupported_layers(model)
    if not unsupported:
        return

    listing = "\n".join(
        f"  - '{name or '<root>'}': {type(layer).__name__}" for name, layer in unsupported
    )
    message = f"Model contains layers unsupported by LRP:\n{listing}"
    if any(isinstance(layer, SOFTMAX_LAYERS) for _, layer in unsupported):
        message += (
            "\nLRP explains pre-softmax scores. Remove the softmax with "
            "relprop.model.strip_softmax(model)."
        )
    if any(getattr(layer, "return_indices", False) for _, layer in unsupported):
        message += "\nPooling layers must be built with return_indices=False."
    raise ConfigurationError(message)


def strip_softmax(model: nn.Module) -> nn.Module:
    """
    Return a copy of a model without trailing softmax layers.

    Args:
        model: The model, usually an nn.Sequential ending in nn.Softmax.

    Returns:
        A deep copy with trailing Softmax / LogSoftmax / Softmin removed. The
        model itself is returned as a copy unchanged if it has none.

    Raises:
        ConfigurationError: If the model is a bare softmax layer.
    """
    if isinstance(model, SOFTMAX_LAYERS):
        raise ConfigurationError("Cannot strip the softmax from a model that only is a softmax")

    model = copy.deepcopy(model)
    if not isinstance(model, nn.Sequential):
        return model

    layers = list(model.children())
    while layers and isinstance(layers[-1], SOFTMAX_LAYERS):
        logger.info(f"Removing trailing {type(layers[-1]).__name__}")
        layers.pop()
    return nn.Sequential(*layers)
