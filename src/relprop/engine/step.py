# src/relprop/engine/step.py
"""
Single-layer relevance propagation step.

Given the input activation a of a layer and the relevance R_out assigned to
its output, compute the relevance R_in of its input under a rule.

Backward projections are vector-Jacobian products of the (modified) layer,
obtained with torch.autograd.grad. For a linear map this is the transposed
weight, for a convolution the transposed convolution, and for max pooling
the routing to the arg-max. Autograd is used only for this projection: no
gradient ever reaches a parameter.

The generic z-rule covers every single-term rule:

    z  = layer~(a~)
    s  = R_out / modify_denominator(z)
    R_in = a~ * vjp(layer~, a~)(s)

Dispatch is two-level: first on the LayerKind of the layer, then, for
parameterized layers, on the rule type. Multi-term rules (ZBox, AlphaBeta,
ZPlus, GeneralizedGamma) have dedicated steps.

Example:
    >>> layer = nn.Linear(2, 2)
    >>> rule = EpsilonRule()
    >>> R_in = lrp(rule, layer, modify_layer(rule, layer), a, R_out)
"""

from typing import Callable, Dict, Tuple, Type

import torch
import torch.nn as nn

from relprop.core.errors import ConfigurationError, NumericalError, ShapeMismatchError
from relprop.layers.kinds import CONTAINER_KINDS, LayerKind, layer_kind
from relprop.rules.modifiers import ModifiedLayer, PairedLayers, QuadLayers
from relprop.rules.rules import (
    AlphaBetaRule,
    GeneralizedGammaRule,
    LayerNormRule,
    LRPRule,
    PassRule,
    ZBoxRule,
    ZPlusRule,
)
from relprop.rules.stabilize import keep_negative, keep_positive


Pullback = Callable[[torch.Tensor], torch.Tensor]


# =============================================================================
# Helpers
# =============================================================================

def _pullback(fn: Callable[[torch.Tensor], torch.Tensor], x: torch.Tensor) -> Tuple[torch.Tensor, Pullback]:
    """
    Evaluate fn at x and return its output with a vector-Jacobian product.

    Args:
        fn: Layer or function of a single tensor.
        x: Point of evaluation. Not modified.

    Returns:
        (z, back) where z = fn(x) (detached) and back(s) = s^T · ∂fn/∂x.
    """
    x = x.detach().requires_grad_(True)
    with torch.enable_grad():
        z = fn(x)

    def back(s: torch.Tensor) -> torch.Tensor:
        (grad,) = torch.autograd.grad(z, x, grad_outputs=s, retain_graph=True)
        return grad

    return z.detach(), back


def _check_shape(tensor: torch.Tensor, expected: torch.Size, what: str, layer: nn.Module) -> None:
    if tensor.shape != expected:
        raise ShapeMismatchError(
            f"{what} of {type(layer).__name__} has shape {tuple(tensor.shape)}, "
            f"expected {tuple(expected)}"
        )


def _divide(rule: LRPRule, relevance: torch.Tensor, z: torch.Tensor, layer: nn.Module) -> torch.Tensor:
    _check_shape(relevance, z.shape, "Output relevance", layer)
    return relevance / rule.modify_denominator(z)


def _bound(value, activation: torch.Tensor) -> torch.Tensor:
    bound = torch.as_tensor(value, dtype=activation.dtype, device=activation.device)
    return torch.broadcast_to(bound, activation.shape).clone()


def _expect(modified_layer: ModifiedLayer, cls: type, rule: LRPRule):
    if not isinstance(modified_layer, cls):
        raise ConfigurationError(
            f"{rule.name} expects a modified layer of type {cls.__name__}, "
            f"got {type(modified_layer).__name__}. Build it with modify_layer."
        )
    return modified_layer


# =============================================================================
# Rule steps
# =============================================================================

def _lrp_generic(
    rule: LRPRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """Generic z-rule on the modified layer (or the layer itself)."""
    target = layer if modified_layer is None else modified_layer
    a = rule.modify_input(activation)
    z, back = _pullback(target, a)
    s = _divide(rule, relevance_out, z, layer)
    return a * back(s)


def _lrp_zbox(
    rule: ZBoxRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """
    ZBox: R = a·∂z - l·∂z⁺(l) - h·∂z⁻(h) with z = layer(a) - layer⁺(l) - layer⁻(h).
    """
    pair: PairedLayers = _expect(modified_layer, PairedLayers, rule)
    low = _bound(rule.low, activation)
    high = _bound(rule.high, activation)

    z, back = _pullback(layer, activation)
    z_low, back_low = _pullback(pair.positive, low)
    z_high, back_high = _pullback(pair.negative, high)

    s = _divide(rule, relevance_out, z - z_low - z_high, layer)
    return activation * back(s) - low * back_low(s) - high * back_high(s)


def _alpha_beta_terms(
    rule: LRPRule,
    layer: nn.Module,
    quad: QuadLayers,
    activation: torch.Tensor,
    relevance_out: torch.Tensor,
    with_negative: bool
) -> Tuple[torch.Tensor, torch.Tensor]:
    a_pos = keep_positive(activation)
    a_neg = keep_negative(activation)

    z_lp, back_lp = _pullback(quad.left_pos, a_pos)
    z_ln, back_ln = _pullback(quad.left_neg, a_neg)
    s_pos = _divide(rule, relevance_out, z_lp + z_ln, layer)
    r_pos = a_pos * back_lp(s_pos) + a_neg * back_ln(s_pos)

    if not with_negative:
        return r_pos, torch.zeros_like(r_pos)

    z_rn, back_rn = _pullback(quad.right_neg, a_pos)
    z_rp, back_rp = _pullback(quad.right_pos, a_neg)
    s_neg = _divide(rule, relevance_out, z_rn + z_rp, layer)
    r_neg = a_pos * back_rn(s_neg) + a_neg * back_rp(s_neg)
    return r_pos, r_neg


def _lrp_alpha_beta(
    rule: AlphaBetaRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """AlphaBeta: α · (positive-output path) - β · (negative-output path)."""
    quad: QuadLayers = _expect(modified_layer, QuadLayers, rule)
    r_pos, r_neg = _alpha_beta_terms(
        rule, layer, quad, activation, relevance_out, with_negative=rule.beta != 0
    )
    return rule.alpha * r_pos - rule.beta * r_neg


def _lrp_zplus(
    rule: ZPlusRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """ZPlus: the positive-output path of AlphaBeta(1, 0)."""
    quad: QuadLayers = _expect(modified_layer, QuadLayers, rule)
    r_pos, _ = _alpha_beta_terms(
        rule, layer, quad, activation, relevance_out, with_negative=False
    )
    return r_pos


def _lrp_generalized_gamma(
    rule: GeneralizedGammaRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """
    Generalized gamma rule.

    Output relevance is split by the sign of the layer output. Positive
    relevance is explained by the left (positive-output) pair, negative
    relevance by the right pair:

        sˡ = R⁺ / stabilize(left_pos(a⁺) + left_neg(a⁻))
        sʳ = R⁻ / stabilize(right_pos(a⁻) + right_neg(a⁺))
        R  = a⁺ (∂left_pos sˡ + ∂right_neg sʳ) + a⁻ (∂left_neg sˡ + ∂right_pos sʳ)
    """
    quad: QuadLayers = _expect(modified_layer, QuadLayers, rule)
    with torch.no_grad():
        z = layer(activation)
    _check_shape(relevance_out, z.shape, "Output relevance", layer)
    positive = z > 0
    r_out_pos = torch.where(positive, relevance_out, torch.zeros_like(relevance_out))
    r_out_neg = torch.where(positive, torch.zeros_like(relevance_out), relevance_out)

    a_pos = keep_positive(activation)
    a_neg = keep_negative(activation)

    z_lp, back_lp = _pullback(quad.left_pos, a_pos)
    z_ln, back_ln = _pullback(quad.left_neg, a_neg)
    z_rp, back_rp = _pullback(quad.right_pos, a_neg)
    z_rn, back_rn = _pullback(quad.right_neg, a_pos)

    s_left = r_out_pos / rule.modify_denominator(z_lp + z_ln)
    s_right = r_out_neg / rule.modify_denominator(z_rp + z_rn)

    return (
        a_pos * (back_lp(s_left) + back_rn(s_right))
        + a_neg * (back_ln(s_left) + back_rp(s_right))
    )


def _layer_norm_linearized(layer: nn.LayerNorm) -> Callable[[torch.Tensor], torch.Tensor]:
    """LayerNorm forward with the standard deviation detached from the graph."""
    dims = tuple(range(-len(layer.normalized_shape), 0))

    def forward(x: torch.Tensor) -> torch.Tensor:
        mean = x.mean(dim=dims, keepdim=True)
        var = x.var(dim=dims, keepdim=True, unbiased=False)
        std = torch.sqrt(var + layer.eps).detach()
        out = (x - mean) / std
        if layer.weight is not None:
            out = out * layer.weight
        if layer.bias is not None:
            out = out + layer.bias
        return out

    return forward


def _lrp_layer_norm(
    rule: LayerNormRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """LRP-0 through LayerNorm with σ held constant."""
    z, back = _pullback(_layer_norm_linearized(layer), activation)
    s = _divide(rule, relevance_out, z, layer)
    return activation * back(s)


def _lrp_pass(
    rule: PassRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """Pass relevance through, reshaped to the layer input."""
    if relevance_out.numel() != activation.numel():
        raise ShapeMismatchError(
            f"PassRule cannot map relevance of shape {tuple(relevance_out.shape)} "
            f"through {type(layer).__name__} onto input of shape {tuple(activation.shape)}"
        )
    return relevance_out.reshape(activation.shape)


def _reject(
    rule: LRPRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    raise ConfigurationError(
        f"{rule.name} cannot be applied to {type(layer).__name__}"
    )


Step = Callable[[LRPRule, nn.Module, ModifiedLayer, torch.Tensor, torch.Tensor], torch.Tensor]

# Rule-specific steps for parameterized layers; anything else uses the z-rule
PARAMETERIZED_STEPS: Dict[Type[LRPRule], Step] = {
    ZBoxRule: _lrp_zbox,
    AlphaBetaRule: _lrp_alpha_beta,
    ZPlusRule: _lrp_zplus,
    GeneralizedGammaRule: _lrp_generalized_gamma,
    PassRule: _reject,
    LayerNormRule: _reject,
}


def _rule_step(table: Dict[Type[LRPRule], Step], rule: LRPRule, default: Step) -> Step:
    for cls in type(rule).__mro__:
        if cls in table:
            return table[cls]
    return default


# =============================================================================
# Per-kind handlers
# =============================================================================

def _handle_parameterized(rule, layer, modified_layer, activation, relevance_out):
    step = _rule_step(PARAMETERIZED_STEPS, rule, _lrp_generic)
    return step(rule, layer, modified_layer, activation, relevance_out)


def _handle_pooling(rule, layer, modified_layer, activation, relevance_out):
    return _lrp_generic(rule, layer, None, activation, relevance_out)


def _handle_normalization(rule, layer, modified_layer, activation, relevance_out):
    if isinstance(rule, PassRule):
        return _lrp_pass(rule, layer, modified_layer, activation, relevance_out)
    if isinstance(rule, LayerNormRule):
        return _lrp_layer_norm(rule, layer, modified_layer, activation, relevance_out)
    return _lrp_generic(rule, layer, None, activation, relevance_out)


def _handle_passthrough(rule, layer, modified_layer, activation, relevance_out):
    if isinstance(rule, PassRule):
        return _lrp_pass(rule, layer, modified_layer, activation, relevance_out)
    return _lrp_generic(rule, layer, None, activation, relevance_out)


def _handle_container(rule, layer, modified_layer, activation, relevance_out):
    raise ConfigurationError(
        f"{type(layer).__name__} is a container; relevance through it is "
        f"propagated by relprop.engine.propagate, not by a single step"
    )


KIND_HANDLERS: Dict[LayerKind, Step] = {
    LayerKind.LINEAR: _handle_parameterized,
    LayerKind.CONVOLUTION: _handle_parameterized,
    LayerKind.SCALE: _handle_parameterized,
    LayerKind.MAX_POOL: _handle_pooling,
    LayerKind.MEAN_POOL: _handle_pooling,
    LayerKind.GLOBAL_MAX_POOL: _handle_pooling,
    LayerKind.GLOBAL_MEAN_POOL: _handle_pooling,
    LayerKind.LAYER_NORM: _handle_normalization,
    LayerKind.BATCH_NORM: _handle_normalization,
    LayerKind.ACTIVATION: _handle_passthrough,
    LayerKind.FLATTEN: _handle_passthrough,
    LayerKind.DROPOUT: _handle_passthrough,
    LayerKind.IDENTITY: _handle_passthrough,
    LayerKind.PARALLEL: _handle_container,
    LayerKind.SKIP_CONNECTION: _handle_container,
}


# =============================================================================
# Public API
# =============================================================================

def lrp(
    rule: LRPRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """
    Propagate relevance through one layer.

    Args:
        rule: Rule to apply.
        layer: The original layer.
        modified_layer: Output of ``modify_layer(rule, layer)``.
        activation: Input activation of the layer, batch first.
        relevance_out: Relevance of the layer output, same shape as
            ``layer(activation)``.

    Returns:
        Relevance of the layer input, same shape and dtype as ``activation``.

    Raises:
        ConfigurationError: If the layer is unsupported, a container, or of a
            kind the rule does not support.
        ShapeMismatchError: If ``relevance_out`` does not match the layer output.
        NumericalError: If the result contains NaN or infinite values.
    """
    kind = layer_kind(layer)
    if kind not in CONTAINER_KINDS and kind not in rule.compatible_kinds:
        raise ConfigurationError(
            f"{rule.name} does not support layer kind '{kind.value}' "
            f"({type(layer).__name__})"
        )

    relevance_in = KIND_HANDLERS[kind](rule, layer, modified_layer, activation, relevance_out)
    relevance_in = relevance_in.detach().to(activation.dtype)

    _check_shape(relevance_in, activation.shape, "Input relevance", layer)
    if not torch.isfinite(relevance_in).all():
        raise NumericalError(
            f"{rule.name} produced non-finite relevance at {type(layer).__name__}"
        )
    return relevance_in


def lrp_(
    relevance_in: torch.Tensor,
    rule: LRPRule,
    layer: nn.Module,
    modified_layer: ModifiedLayer,
    activation: torch.Tensor,
    relevance_out: torch.Tensor
) -> torch.Tensor:
    """
    In-place variant of :func:`lrp`: write the input relevance into
    ``relevance_in`` and return it.

    Raises:
        ShapeMismatchError: If ``relevance_in`` does not have the shape of
            ``activation``.
    """
    _check_shape(relevance_in, activation.shape, "Input relevance buffer", layer)
    result = lrp(rule, layer, modified_layer, activation, relevance_out)
    with torch.no_grad():
        relevance_in.copy_(result)
    return relevance_in
