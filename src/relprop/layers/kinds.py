# src/relprop/layers/kinds.py
"""
The closed vocabulary of layer kinds understood by relprop.

Every module that can appear in an analyzed model is mapped to exactly one
LayerKind. The step engine, the compatibility checker and the composites
all work on kinds rather than on concrete torch classes, so adding support
for a new torch module only means extending the tables below.
"""

from enum import Enum
from typing import Optional

import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.modules import Parallel, Scale, SkipConnection


class LayerKind(Enum):
    """Kind tag of a layer."""

    LINEAR = "linear"
    CONVOLUTION = "convolution"
    SCALE = "scale"
    MAX_POOL = "max_pool"
    MEAN_POOL = "mean_pool"
    GLOBAL_MAX_POOL = "global_max_pool"
    GLOBAL_MEAN_POOL = "global_mean_pool"
    LAYER_NORM = "layer_norm"
    BATCH_NORM = "batch_norm"
    ACTIVATION = "activation"
    FLATTEN = "flatten"
    DROPOUT = "dropout"
    IDENTITY = "identity"
    PARALLEL = "parallel"
    SKIP_CONNECTION = "skip_connection"


PARAMETERIZED_KINDS = frozenset({
    LayerKind.LINEAR,
    LayerKind.CONVOLUTION,
    LayerKind.SCALE,
})
POOLING_KINDS = frozenset({
    LayerKind.MAX_POOL,
    LayerKind.MEAN_POOL,
    LayerKind.GLOBAL_MAX_POOL,
    LayerKind.GLOBAL_MEAN_POOL,
})
NORMALIZATION_KINDS = frozenset({LayerKind.LAYER_NORM, LayerKind.BATCH_NORM})
PASSTHROUGH_KINDS = frozenset({
    LayerKind.ACTIVATION,
    LayerKind.FLATTEN,
    LayerKind.DROPOUT,
    LayerKind.IDENTITY,
})
# Kinds whose forward only moves values around; the model input is still
# "raw" after them.
RESHAPING_KINDS = frozenset({LayerKind.FLATTEN, LayerKind.DROPOUT, LayerKind.IDENTITY})
CONTAINER_KINDS = frozenset({LayerKind.PARALLEL, LayerKind.SKIP_CONNECTION})
LEAF_KINDS = frozenset(LayerKind) - CONTAINER_KINDS


# Layer types, grouped the way they are dispatched
LINEAR_LAYERS = (nn.Linear,)
CONV_LAYERS = (nn.Conv1d, nn.Conv2d, nn.Conv3d)
MAX_POOL_LAYERS = (nn.MaxPool1d, nn.MaxPool2d, nn.MaxPool3d)
MEAN_POOL_LAYERS = (nn.AvgPool1d, nn.AvgPool2d, nn.AvgPool3d)
ADAPTIVE_MAX_POOL_LAYERS = (nn.AdaptiveMaxPool1d, nn.AdaptiveMaxPool2d, nn.AdaptiveMaxPool3d)
ADAPTIVE_MEAN_POOL_LAYERS = (nn.AdaptiveAvgPool1d, nn.AdaptiveAvgPool2d, nn.AdaptiveAvgPool3d)
LAYER_NORM_LAYERS = (nn.LayerNorm,)
BATCH_NORM_LAYERS = (nn.BatchNorm1d, nn.BatchNorm2d, nn.BatchNorm3d)
ACTIVATION_LAYERS = (
    nn.ReLU, nn.LeakyReLU, nn.ReLU6, nn.ELU, nn.GELU, nn.SiLU,
    nn.Softplus, nn.Tanh, nn.Sigmoid,
)
FLATTEN_LAYERS = (nn.Flatten, nn.Unflatten)
DROPOUT_LAYERS = (nn.Dropout, nn.Dropout1d, nn.Dropout2d, nn.Dropout3d, nn.AlphaDropout)
IDENTITY_LAYERS = (nn.Identity,)
# Must be removed before analysis, see relprop.model.checks.strip_softmax
SOFTMAX_LAYERS = (nn.Softmax, nn.LogSoftmax, nn.Softmin)


def _is_global(layer: nn.Module) -> bool:
    """Whether an adaptive pooling layer reduces every spatial axis to 1."""
    size = layer.output_size
    if isinstance(size, int):
        return size == 1
    return all(s == 1 for s in size)


def find_layer_kind(layer: nn.Module) -> Optional[LayerKind]:
    """
    Look up the kind of a layer.

    Args:
        layer: Any torch module.

    Returns:
        The LayerKind, or None if the module is not part of the vocabulary.
    """
    # Package modules first: they may subclass nothing but nn.Module
    if isinstance(layer, Scale):
        return LayerKind.SCALE
    if isinstance(layer, Parallel):
        return LayerKind.PARALLEL
    if isinstance(layer, SkipConnection):
        return LayerKind.SKIP_CONNECTION

    if isinstance(layer, LINEAR_LAYERS):
        return LayerKind.LINEAR
    if isinstance(layer, CONV_LAYERS):
        return LayerKind.CONVOLUTION
    # Pooling with return_indices outputs a tuple
    if getattr(layer, "return_indices", False):
        return None
    if isinstance(layer, MAX_POOL_LAYERS):
        return LayerKind.MAX_POOL
    if isinstance(layer, MEAN_POOL_LAYERS):
        return LayerKind.MEAN_POOL
    if isinstance(layer, ADAPTIVE_MAX_POOL_LAYERS):
        return LayerKind.GLOBAL_MAX_POOL if _is_global(layer) else LayerKind.MAX_POOL
    if isinstance(layer, ADAPTIVE_MEAN_POOL_LAYERS):
        return LayerKind.GLOBAL_MEAN_POOL if _is_global(layer) else LayerKind.MEAN_POOL
    if isinstance(layer, LAYER_NORM_LAYERS):
        return LayerKind.LAYER_NORM
    if isinstance(layer, BATCH_NORM_LAYERS):
        return LayerKind.BATCH_NORM
    if isinstance(layer, ACTIVATION_LAYERS):
        return LayerKind.ACTIVATION
    if isinstance(layer, FLATTEN_LAYERS):
        return LayerKind.FLATTEN
    if isinstance(layer, DROPOUT_LAYERS):
        return LayerKind.DROPOUT
    if isinstance(layer, IDENTITY_LAYERS):
        return LayerKind.IDENTITY
    return None


def layer_kind(layer: nn.Module) -> LayerKind:
    """
    Get the kind of a layer, failing on unknown modules.

    Raises:
        ConfigurationError: If the module is not part of the vocabulary.
    """
    kind = find_layer_kind(layer)
    if kind is None:
        hint = ""
        if isinstance(layer, SOFTMAX_LAYERS):
            hint = " Remove the softmax with relprop.model.strip_softmax before analysis."
        elif getattr(layer, "return_indices", False):
            hint = " Pooling layers must be built with return_indices=False."
        raise ConfigurationError(
            f"Unsupported layer type '{type(layer).__name__}'.{hint}"
        )
    return kind


def has_parameters(kind: LayerKind) -> bool:
    """Whether layers of this kind carry a weight and an optional bias."""
    return kind in PARAMETERIZED_KINDS
