# src/relprop/analyzers/lrp.py
"""
Layer-wise Relevance Propagation (LRP) - Decomposition-based Attribution.

LRP decomposes network predictions back to input features using a conservation
principle. Unlike gradient-based methods, LRP propagates relevance scores
layer-by-layer through the network using specific propagation rules.

Key Properties:
- Conservation: Sum of relevances at each layer equals the output
- Layer-wise decomposition: Relevance flows backward through layers
- Multiple rules: Different rules for different layers, chosen by a Composite

Supported Layer Types:
- Linear, Conv1d/2d/3d, Scale
- BatchNorm1d/2d/3d (fused or turned into Scale by canonization), LayerNorm
- ReLU, LeakyReLU, ReLU6, ELU, GELU, SiLU, Softplus, Tanh, Sigmoid
- Max/Avg pooling (1d/2d/3d, adaptive)
- Flatten, Unflatten, Dropout, Identity
- Parallel and SkipConnection branches

Reference:
    Bach, S., Binder, A., Montavon, G., Klauschen, F., Müller, K. R., & Samek, W. (2015).
    On Pixel-wise Explanations for Non-Linear Classifier Decisions by Layer-wise
    Relevance Propagation. PLOS ONE.
    https://doi.org/10.1371/journal.pone.0130140

    Montavon, G., Binder, A., Lapuschkin, S., Samek, W., & Müller, K. R. (2019).
    Layer-wise Relevance Propagation: An Overview. Explainable AI: Interpreting,
    Explaining and Visualizing Deep Learning. Springer.

Example:
    from relprop import LRP, epsilon_plus

    analyzer = LRP(model, epsilon_plus())
    explanation = analyzer.analyze(x)                 # explain the argmax
    explanation = analyzer.analyze(x, output_selection=3)
    print(explanation.attribution.shape, explanation.convergence_delta())
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Union

import torch
import torch.nn as nn

from relprop.composites.primitives import (
    Composite,
    FirstLayerTypeMap,
    GlobalTypeMap,
    rules_for_layers,
)
from relprop.core.analyzer import BaseAnalyzer
from relprop.core.errors import ConfigurationError, ShapeMismatchError
from relprop.core.explanation import Explanation
from relprop.engine.driver import RelevanceHook, propagate
from relprop.engine.graph import Graph
from relprop.layers.kinds import PASSTHROUGH_KINDS
from relprop.model.canonize import canonize as canonize_model
from relprop.model.checks import check_lrp_compat
from relprop.rules.modifiers import ModifiedLayer, modify_layer
from relprop.rules.rules import LRPRule

logger = logging.getLogger(__name__)


OutputSelection = Optional[Union[int, Sequence[int], torch.Tensor]]
CompositeLike = Optional[Union[Composite, LRPRule, Sequence[LRPRule], str]]


def _single_rule_composite(rule: LRPRule) -> Composite:
    """Apply one rule to every layer that supports it, defaults elsewhere."""
    kinds = frozenset(rule.compatible_kinds - PASSTHROUGH_KINDS) or rule.compatible_kinds
    if rule.first_layer_only:
        return Composite(FirstLayerTypeMap({kinds: rule}))
    return Composite(GlobalTypeMap({kinds: rule}))


class LRP(BaseAnalyzer):
    """
    Layer-wise Relevance Propagation (LRP) analyzer for neural networks.

    LRP decomposes the network output into relevance scores for each input
    element by propagating relevance backward through the network layers.
    The key property is conservation: the sum of relevances at each layer
    equals the relevance at the layer above.

    Attributes:
        model: The (canonized) model being analyzed
        graph: Graph of the model
        rules: Rule per leaf node index
        modified_layers: Modified layer per leaf node index
        normalize_output_relevance: Whether the explained output starts with
            relevance 1 (True) or with its own value (False)

    Example:
        >>> analyzer = LRP(model, EpsilonRule())
        >>> explanation = analyzer.analyze(x)
        >>> explanation.attribution.shape == x.shape
        True
    """

    method = "LRP"

    def __init__(
        self,
        model: nn.Module,
        composite: CompositeLike = None,
        canonize: bool = True,
        skip_checks: bool = False,
        normalize_output_relevance: bool = True
    ):
        """
        Initialize the LRP analyzer.

        Args:
            model: The PyTorch model to explain. Put into eval mode.
            composite: How rules are assigned to layers:
                - None: kind defaults (LRP-0 on linear, convolution,
                  pooling and Scale layers, pass-through elsewhere)
                - a Composite
                - a single LRPRule, applied to every layer supporting it
                - a sequence with one LRPRule per layer, in graph order
                - the name of a composite in the default registry
            canonize: Canonize a copy of the model before analysis.
            skip_checks: Skip the model support check and rule
                compatibility checks.
            normalize_output_relevance: Start propagation from relevance 1 at
                the explained output instead of the output's value.

        Raises:
            TypeError: If model is not an nn.Module.
            ConfigurationError: If the model contains unsupported layers or a
                rule is incompatible with its layer.
        """
        if not isinstance(model, nn.Module):
            raise TypeError(
                f"LRP requires a torch.nn.Module, got {type(model).__name__}"
            )

        model.eval()
        if not skip_checks:
            check_lrp_compat(model)
        if canonize:
            model = canonize_model(model)

        self.model = model
        self.graph = Graph.from_model(model)
        self.normalize_output_relevance = normalize_output_relevance
        self.rules: Dict[int, LRPRule] = self._resolve_rules(composite, check=not skip_checks)
        self.modified_layers: Dict[int, ModifiedLayer] = {
            index: modify_layer(rule, self.graph[index].layer)
            for index, rule in self.rules.items()
        }
        logger.debug(f"LRP analyzer over {self.graph.n_leaves()} layers")

    def _resolve_rules(self, composite: CompositeLike, check: bool) -> Dict[int, LRPRule]:
        if composite is None:
            composite = Composite()
        elif isinstance(composite, str):
            from relprop.core.registry import default_registry
            composite = default_registry.create(composite)
        elif isinstance(composite, LRPRule):
            composite = _single_rule_composite(composite)
        elif not isinstance(composite, Composite):
            return rules_for_layers(self.graph, list(composite), check=check)
        return composite.assign(self.graph, check=check)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _prepare_input(input) -> torch.Tensor:
        x = torch.as_tensor(input)
        if not torch.is_floating_point(x):
            x = x.to(torch.get_default_dtype())
        if x.dim() < 2:
            raise ShapeMismatchError(
                f"Input of shape {tuple(x.shape)} has no batch dimension; "
                f"expected (batch, features...), e.g. x.unsqueeze(0)"
            )
        return x.detach()

    @staticmethod
    def _select(flat_output: torch.Tensor, output_selection: OutputSelection) -> torch.Tensor:
        """Resolve an output selection to one flat output index per sample."""
        n, n_outputs = flat_output.shape
        if output_selection is None:
            return flat_output.argmax(dim=1)

        if isinstance(output_selection, int):
            selection = torch.full((n,), output_selection, dtype=torch.long)
        else:
            selection = torch.as_tensor(output_selection, dtype=torch.long).reshape(-1)
            if selection.numel() != n:
                raise ConfigurationError(
                    f"output_selection has {selection.numel()} entries for a batch of {n}"
                )
        selection = selection.to(flat_output.device)
        if ((selection < 0) | (selection >= n_outputs)).any():
            raise ConfigurationError(
                f"output_selection {selection.tolist()} out of range for {n_outputs} outputs"
            )
        return selection

    def _explain(
        self,
        x: torch.Tensor,
        outputs: List[torch.Tensor],
        output_selection: OutputSelection,
        layerwise_relevances: bool = False,
        hooks: Optional[Mapping[int, RelevanceHook]] = None
    ) -> Explanation:
        """Propagate from one output selection, reusing cached activations."""
        output = self.graph.output_of(x, outputs)
        n = x.shape[0]
        if output.dim() < 1 or output.shape[0] != n:
            raise ShapeMismatchError(
                f"Model output of shape {tuple(output.shape)} does not keep "
                f"the batch dimension of the input {tuple(x.shape)}"
            )
        flat = output.reshape(n, -1)
        selection = self._select(flat, output_selection)
        score = flat.gather(1, selection.unsqueeze(1)).squeeze(1)

        if self.normalize_output_relevance:
            total = torch.ones_like(score)
        else:
            total = score.clone()
        relevance = torch.zeros_like(flat)
        relevance.scatter_(1, selection.unsqueeze(1), total.unsqueeze(1))
        relevance = relevance.reshape(output.shape)

        result = propagate(
            self.graph,
            self.rules,
            self.modified_layers,
            outputs,
            x,
            relevance,
            hooks=hooks,
            layerwise=layerwise_relevances,
        )

        extras = {}
        if layerwise_relevances:
            extras["layerwise_relevances"] = {
                self.graph[index].name: r for index, r in sorted(result.node_relevances.items())
            }
            extras["layerwise_relevances"]["input"] = result.input_relevance

        attribution = result.input_relevance
        heatmap = attribution.sum(dim=1) if attribution.dim() > 2 else None
        return Explanation(
            attribution=attribution,
            input=x,
            output=output,
            output_selection=selection,
            method=self.method,
            score=score,
            relevance_total=total,
            heatmap=heatmap,
            extras=extras,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def analyze(
        self,
        input,
        output_selection: OutputSelection = None,
        layerwise_relevances: bool = False
    ) -> Explanation:
        """
        Generate an LRP explanation for an input batch.

        Args:
            input: Input tensor (or array), batch first.
            output_selection: Output to explain: None for the argmax of each
                sample, an int for the same output for all samples, or one
                index per sample. Indices refer to the output flattened to
                (N, -1).
            layerwise_relevances: If True, ``extras["layerwise_relevances"]``
                maps every node name to the relevance of its output, plus
                "input" to the input relevance.

        Returns:
            Explanation with ``attribution`` shaped like the input.

        Example:
            >>> explanation = analyzer.analyze(x, output_selection=[0, 2])
        """
        x = self._prepare_input(input)
        outputs = self.graph.forward(x)
        return self._explain(x, outputs, output_selection, layerwise_relevances)

    def analyze_outputs(
        self,
        input,
        output_selections: Sequence[OutputSelection]
    ) -> List[Explanation]:
        """
        Explain several outputs of the same input with a single forward pass.

        Args:
            input: Input tensor, batch first.
            output_selections: One output selection per explanation.

        Returns:
            One Explanation per selection, in order.
        """
        x = self._prepare_input(input)
        outputs = self.graph.forward(x)
        return [self._explain(x, outputs, selection) for selection in output_selections]
