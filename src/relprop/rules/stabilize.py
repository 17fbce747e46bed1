# src/relprop/rules/stabilize.py
"""
Numeric helpers shared by all rules.

The stabilizer constants are pinned: float-level agreement with reference
relevances depends on them, so they are not meant to be tuned per call.
"""

import torch


# Pinned stabilizer table
DEFAULT_STABILIZER = 1e-9   # LRP-0 family, pooling, merges, GeneralizedGamma, LayerNorm
SPLIT_STABILIZER = 1e-6     # per-path denominators of AlphaBeta, ZPlus and ZBox
DEFAULT_EPSILON = 1e-6      # EpsilonRule
DEFAULT_GAMMA = 0.25        # GammaRule, GeneralizedGammaRule


def stabilize_denom(denominator: torch.Tensor, eps: float = DEFAULT_STABILIZER) -> torch.Tensor:
    """
    Shift a denominator away from zero by ``eps`` in the direction of its sign.

    Zero entries count as positive and become ``eps``.

    Args:
        denominator: Tensor about to be divided by.
        eps: Magnitude of the shift.

    Returns:
        New tensor of the same shape and dtype.
    """
    sign = (denominator == 0).to(denominator) + denominator.sign()
    return denominator + sign * eps


def keep_positive(x: torch.Tensor) -> torch.Tensor:
    """Elementwise max(x, 0)."""
    return x.clamp(min=0)


def keep_negative(x: torch.Tensor) -> torch.Tensor:
    """Elementwise min(x, 0)."""
    return x.clamp(max=0)
