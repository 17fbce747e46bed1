# src/relprop/model/canonize.py
"""
Model canonization.

LRP rules are defined for affine layers followed by elementwise
nonlinearities. Canonization rewrites a model into an equivalent one of that
shape, without changing its forward output beyond floating-point rounding:

    - Linear/Conv followed by BatchNorm are fused into one layer
    - any remaining BatchNorm becomes a per-channel Scale
    - LayerNorm with elementwise affine parameters is split into a
      parameter-free LayerNorm and a Scale

Dotted module names survive canonization, so name-based rule assignment
and layer lookup work on the canonized model. A fused layer keeps the name
of the Linear/Conv and the BatchNorm's name disappears; a BatchNorm turned
into a Scale keeps its name; a split LayerNorm ``ln`` becomes the
normalization ``ln`` followed by the Scale ``ln_scale``.

The input model is never modified; canonize works on a deep copy in eval
mode.

Example:
    >>> model = nn.Sequential(nn.Conv2d(3, 8, 3), nn.BatchNorm2d(8), nn.ReLU())
    >>> canonize(model)
    Sequential(
      (0): Conv2d(3, 8, kernel_size=(3, 3), stride=(1, 1))
      (2): ReLU()
    )
"""

import copy
import logging
from collections import OrderedDict
from typing import List, Tuple

import torch
import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import (
    BATCH_NORM_LAYERS,
    CONV_LAYERS,
    LAYER_NORM_LAYERS,
    LINEAR_LAYERS,
)
from relprop.layers.modules import Parallel, Scale, SkipConnection

logger = logging.getLogger(__name__)

NamedLayers = List[Tuple[str, nn.Module]]


# =============================================================================
# Flattening
# =============================================================================

def _join(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _named_layers(module: nn.Module, prefix: str = "") -> NamedLayers:
    """Non-Sequential modules in forward order, with their dotted names."""
    if isinstance(module, nn.Sequential):
        layers: NamedLayers = []
        for child_name, child in module.named_children():
            layers.extend(_named_layers(child, _join(prefix, child_name)))
        return layers
    return [(prefix, module)]


def _nest(layers: NamedLayers) -> nn.Module:
    """Rebuild the nn.Sequential hierarchy described by dotted names."""
    if len(layers) == 1 and layers[0][0] == "":
        return layers[0][1]
    groups: "OrderedDict[str, NamedLayers]" = OrderedDict()
    for name, layer in layers:
        head, _, rest = name.partition(".")
        groups.setdefault(head, []).append((rest, layer))
    return nn.Sequential(OrderedDict((head, _nest(group)) for head, group in groups.items()))


def flatten_model(model: nn.Module) -> nn.Sequential:
    """
    Flatten nested nn.Sequential containers into a single level.

    Parallel and SkipConnection are kept, with their branches flattened.
    Layers are shared with the input model, not copied. Unlike canonize,
    layers are renumbered from 0.

    Returns:
        An nn.Sequential without directly nested Sequentials.
    """
    layers: List[nn.Module] = []
    for _, layer in _named_layers(model):
        if isinstance(layer, Parallel):
            branches = [flatten_model(branch) for branch in layer.branches]
            layer = Parallel(*branches, connection=layer.connection, dim=layer.dim)
        elif isinstance(layer, SkipConnection):
            layer = SkipConnection(flatten_model(layer.layers), connection=layer.connection)
        layers.append(layer)
    return nn.Sequential(*layers)


# =============================================================================
# Layer rewrites
# =============================================================================

def _batchnorm_affine(bn: nn.Module):
    """Per-channel (scale, shift) equivalent to an eval-mode BatchNorm."""
    if bn.running_mean is None or bn.running_var is None:
        raise ConfigurationError(
            f"{type(bn).__name__} without running statistics cannot be "
            f"canonized (track_running_stats=False)"
        )
    scale = 1.0 / torch.sqrt(bn.running_var + bn.eps)
    if bn.weight is not None:
        scale = bn.weight * scale
    shift = -bn.running_mean * scale
    if bn.bias is not None:
        shift = shift + bn.bias
    return scale.detach(), shift.detach()


def fuse_batchnorm(layer: nn.Module, bn: nn.Module) -> nn.Module:
    """
    Fuse a BatchNorm into the Linear or Conv layer preceding it.

    With ``scale = γ / sqrt(var + eps)`` per output channel:

        W' = W * scale
        b' = (b or 0) * scale + β - μ * scale

    Args:
        layer: nn.Linear or nn.Conv1d/2d/3d.
        bn: nn.BatchNorm1d/2d/3d applied to the layer's output.

    Returns:
        A new layer of the same type as ``layer``, always with a bias.

    Raises:
        ConfigurationError: If the pair is not Linear/Conv + BatchNorm, the
            channel counts differ, or the BatchNorm has no running statistics.
    """
    if not isinstance(layer, LINEAR_LAYERS + CONV_LAYERS) or not isinstance(bn, BATCH_NORM_LAYERS):
        raise ConfigurationError(
            f"Cannot fuse {type(layer).__name__} with {type(bn).__name__}: "
            f"expected Linear or Conv followed by BatchNorm"
        )
    n_out = layer.weight.shape[0]
    if bn.num_features != n_out:
        raise ConfigurationError(
            f"Cannot fuse {type(layer).__name__} with {n_out} output channels "
            f"into {type(bn).__name__} over {bn.num_features} features"
        )

    scale, shift = _batchnorm_affine(bn)
    weight = layer.weight.detach()
    bias = layer.bias.detach() if layer.bias is not None else torch.zeros_like(scale)
    view = (-1,) + (1,) * (weight.dim() - 1)

    fused = copy.deepcopy(layer)
    fused.weight = nn.Parameter(weight * scale.view(view))
    fused.bias = nn.Parameter(bias * scale + shift)
    return fused


def batchnorm_to_scale(bn: nn.Module) -> Scale:
    """Turn an eval-mode BatchNorm into an equivalent per-channel Scale."""
    scale, shift = _batchnorm_affine(bn)
    return Scale(scale.clone(), shift.clone(), dim=1)


def split_normalization(layer: nn.LayerNorm) -> List[nn.Module]:
    """
    Split an affine LayerNorm into normalization followed by a Scale.

    Returns:
        ``[LayerNorm(elementwise_affine=False), Scale(weight, bias)]``, or
        ``[layer]`` if the LayerNorm has no affine parameters.
    """
    if layer.weight is None:
        return [layer]
    norm = nn.LayerNorm(
        layer.normalized_shape,
        eps=layer.eps,
        elementwise_affine=False,
        device=layer.weight.device,
        dtype=layer.weight.dtype,
    )
    bias = layer.bias.detach().clone() if layer.bias is not None else None
    return [norm, Scale(layer.weight.detach().clone(), bias)]


def canonize_layer(layer: nn.Module) -> List[nn.Module]:
    """
    Canonize a standalone normalization layer.

    Raises:
        ConfigurationError: If the layer is not a BatchNorm or LayerNorm.
    """
    if isinstance(layer, BATCH_NORM_LAYERS):
        return [batchnorm_to_scale(layer)]
    if isinstance(layer, LAYER_NORM_LAYERS):
        return split_normalization(layer)
    raise ConfigurationError(
        f"No canonization pattern for standalone {type(layer).__name__}"
    )


# =============================================================================
# Model canonization
# =============================================================================

def _split_names(name: str) -> Tuple[str, str]:
    """Names of the normalization and the Scale a split LayerNorm becomes."""
    if not name:
        return "norm", "scale"
    return name, f"{name}_scale"


def _canonize_sequence(layers: NamedLayers) -> NamedLayers:
    result: NamedLayers = []
    i = 0
    while i < len(layers):
        name, layer = layers[i]
        following = layers[i + 1][1] if i + 1 < len(layers) else None

        if isinstance(layer, Parallel):
            branches = [_canonize_module(branch) for branch in layer.branches]
            result.append((name, Parallel(*branches, connection=layer.connection, dim=layer.dim)))
        elif isinstance(layer, SkipConnection):
            inner = _canonize_module(layer.layers)
            result.append((name, SkipConnection(inner, connection=layer.connection)))
        elif isinstance(layer, LINEAR_LAYERS + CONV_LAYERS) and isinstance(following, BATCH_NORM_LAYERS):
            logger.info(f"Fusing {type(following).__name__} '{layers[i + 1][0]}' into '{name}'")
            result.append((name, fuse_batchnorm(layer, following)))
            i += 1
        elif isinstance(layer, BATCH_NORM_LAYERS):
            logger.info(f"Replacing standalone {type(layer).__name__} '{name}' by Scale")
            result.extend(zip([name], canonize_layer(layer)))
        elif isinstance(layer, LAYER_NORM_LAYERS) and layer.weight is not None:
            logger.info(f"Splitting affine LayerNorm '{name}' into LayerNorm + Scale")
            result.extend(zip(_split_names(name), canonize_layer(layer)))
        else:
            result.append((name, layer))
        i += 1
    return result


def _canonize_module(module: nn.Module) -> nn.Module:
    return _nest(_canonize_sequence(_named_layers(module)))


def canonize(model: nn.Module) -> nn.Module:
    """
    Return a canonized copy of a model.

    Args:
        model: Model built from nn.Sequential, Parallel, SkipConnection and
            supported layers. Not modified.

    Returns:
        An equivalent model in eval mode that keeps the module names of
        the input model. A model that is a single layer is returned as that
        layer, not wrapped in nn.Sequential.

    Raises:
        ConfigurationError: If a BatchNorm has no running statistics.
    """
    model = copy.deepcopy(model).eval()
    canonized = _canonize_module(model).eval()
    logger.debug(f"Canonized model: {canonized}")
    return canonized
