# src/relprop/layers/modules.py
"""
Structural modules missing from torch.nn.

PyTorch has no elementwise affine layer and no first-class notion of
parallel branches or residual connections. relprop needs all three as
explicit modules so that the graph builder can recognize them:

- Scale: y = x * weight + bias, the affine half of a canonized normalization
- Parallel: several branches applied to one input, outputs combined
- SkipConnection: y = layers(x) + x

Example:
    import torch.nn as nn
    from relprop.layers import Parallel, SkipConnection

    block = nn.Sequential(
        nn.Linear(8, 8),
        SkipConnection(nn.Sequential(nn.Linear(8, 8), nn.ReLU())),
        Parallel(nn.Identity(), nn.Linear(8, 8)),
    )
"""

from functools import reduce
from typing import List, Optional, Sequence

import torch
import torch.nn as nn

from relprop.core.errors import ConfigurationError


# Connections accepted by Parallel / SkipConnection
CONNECTIONS = ("add", "cat")


def combine(connection: str, outputs: Sequence[torch.Tensor], dim: int = 1) -> torch.Tensor:
    """
    Combine branch outputs with the given connection.

    Args:
        connection: "add" (elementwise sum) or "cat" (concatenation along dim).
        outputs: Branch outputs, in branch order.
        dim: Concatenation axis for "cat".

    Returns:
        The combined tensor.

    Raises:
        ConfigurationError: If the connection is not supported.
    """
    if connection == "add":
        return reduce(torch.add, outputs)
    if connection == "cat":
        return torch.cat(list(outputs), dim=dim)
    raise ConfigurationError(
        f"Unknown connection '{connection}'. Must be one of: {list(CONNECTIONS)}"
    )


class Scale(nn.Module):
    """
    Elementwise affine transform ``y = x * weight + bias``.

    Without ``dim`` the parameters broadcast against the trailing dimensions
    of the input, which matches the layout of ``nn.LayerNorm`` parameters.
    With ``dim`` the parameters are one-dimensional and laid out along that
    axis, which matches per-channel ``nn.BatchNorm*`` statistics.

    Attributes:
        weight: Multiplicative parameter
        bias: Additive parameter, or None
        dim: Axis the parameters are laid out along, or None
    """

    def __init__(
        self,
        weight: torch.Tensor,
        bias: Optional[torch.Tensor] = None,
        dim: Optional[int] = None
    ):
        super().__init__()
        self.weight = nn.Parameter(torch.as_tensor(weight))
        if bias is None:
            self.register_parameter("bias", None)
        else:
            bias = torch.as_tensor(bias, dtype=self.weight.dtype)
            if bias.shape != self.weight.shape:
                raise ConfigurationError(
                    f"Scale bias shape {tuple(bias.shape)} does not match "
                    f"weight shape {tuple(self.weight.shape)}"
                )
            self.bias = nn.Parameter(bias)
        if dim is not None and self.weight.dim() != 1:
            raise ConfigurationError(
                f"Scale with dim={dim} requires a 1-D weight, got shape "
                f"{tuple(self.weight.shape)}"
            )
        self.dim = dim

    def _expand(self, param: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
        if self.dim is None:
            return param
        shape = [1] * x.dim()
        shape[self.dim] = -1
        return param.view(shape)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = x * self._expand(self.weight, x)
        if self.bias is not None:
            out = out + self._expand(self.bias, x)
        return out

    def extra_repr(self) -> str:
        return (
            f"shape={tuple(self.weight.shape)}, bias={self.bias is not None}, "
            f"dim={self.dim}"
        )


class Parallel(nn.Module):
    """
    Apply several branches to the same input and combine their outputs.

    Args:
        *branches: Modules applied to the shared input.
        connection: "add" sums the branch outputs, "cat" concatenates them.
        dim: Concatenation axis when connection is "cat".
    """

    def __init__(self, *branches: nn.Module, connection: str = "add", dim: int = 1):
        super().__init__()
        if not branches:
            raise ConfigurationError("Parallel requires at least one branch")
        if connection not in CONNECTIONS:
            raise ConfigurationError(
                f"Unknown connection '{connection}'. Must be one of: {list(CONNECTIONS)}"
            )
        self.branches = nn.ModuleList(branches)
        self.connection = connection
        self.dim = dim

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        outputs: List[torch.Tensor] = [branch(x) for branch in self.branches]
        return combine(self.connection, outputs, self.dim)

    def extra_repr(self) -> str:
        return f"connection={self.connection!r}, dim={self.dim}"


class SkipConnection(nn.Module):
    """
    Residual block ``y = layers(x) + x``.

    Only the "add" connection is meaningful for a residual, the argument
    exists for symmetry with Parallel.
    """

    def __init__(self, layers: nn.Module, connection: str = "add"):
        super().__init__()
        if connection != "add":
            raise ConfigurationError(
                f"SkipConnection only supports the 'add' connection, got '{connection}'"
            )
        self.layers = layers
        self.connection = connection
        self.dim = 1

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return combine(self.connection, [self.layers(x), x], self.dim)
