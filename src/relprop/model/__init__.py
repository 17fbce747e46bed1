# src/relprop/model/__init__.py
"""
Model preparation: canonization and support checks.
"""

from relprop.model.canonize import (
    batchnorm_to_scale,
    canonize,
    canonize_layer,
    flatten_model,
    fuse_batchnorm,
    split_normalization,
)
from relprop.model.checks import (
    check_lrp_compat,
    find_unsupported_layers,
    strip_softmax,
)

__all__ = [
    "batchnorm_to_scale",
    "canonize",
    "canonize_layer",
    "flatten_model",
    "fuse_batchnorm",
    "split_normalization",
    "check_lrp_compat",
    "find_unsupported_layers",
    "strip_softmax",
]
