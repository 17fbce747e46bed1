# src/relprop/analyzers/crp.py
"""
Concept Relevance Propagation (CRP).

CRP conditions an LRP explanation on a concept: a feature (channel or
neuron, dimension 1) of an intermediate layer. Relevance arriving at that
layer is masked to the feature before it is propagated further, so the
resulting input attribution answers "which input regions make this feature
relevant for the prediction".

Features are chosen per sample, either the n most relevant features of the
layer (TopNFeatures) or a fixed list (IndexedFeatures). The explanation of
concept c for sample b is found at batch position ``c * N + b``.

Reference:
    Achtibat, R., Dreyer, M., Eisenbraun, I., Bosse, S., Wiegand, T., Samek, W.,
    & Lapuschkin, S. (2023). From Attribution Maps to Human-Understandable
    Explanations through Concept Relevance Propagation. Nature Machine
    Intelligence.

Example:
    lrp = LRP(model, epsilon_plus())
    crp = CRP(lrp, layer=3, features=TopNFeatures(2))
    explanation = crp.analyze(x)
    explanation.extras["features"]      # (N, 2) feature indices
"""

import logging
from typing import Optional, Tuple, Union

import torch
import torch.nn.functional as F

from relprop.analyzers.lrp import LRP, OutputSelection
from relprop.core.analyzer import BaseAnalyzer
from relprop.core.errors import ConfigurationError
from relprop.core.explanation import Explanation
from relprop.engine.graph import Node

logger = logging.getLogger(__name__)


def feature_relevance(relevance: torch.Tensor) -> torch.Tensor:
    """Relevance per feature: sum over every axis after the feature axis."""
    if relevance.dim() < 2:
        raise ConfigurationError(
            f"CRP needs a feature axis at dim 1, got relevance of shape {tuple(relevance.shape)}"
        )
    return relevance.reshape(relevance.shape[0], relevance.shape[1], -1).sum(dim=2)


class TopNFeatures:
    """Select the n features with the highest relevance, per sample."""

    needs_relevance = True

    def __init__(self, n: int):
        if n < 1:
            raise ConfigurationError(f"TopNFeatures requires n >= 1, got {n}")
        self.n = n

    def select(self, relevance: Optional[torch.Tensor], n_features: int, batch_size: int) -> torch.Tensor:
        if self.n > n_features:
            raise ConfigurationError(
                f"TopNFeatures({self.n}) exceeds the {n_features} features of the layer"
            )
        return torch.topk(feature_relevance(relevance), self.n, dim=1).indices

    def __repr__(self) -> str:
        return f"TopNFeatures({self.n})"


class IndexedFeatures:
    """Select the same features for every sample."""

    needs_relevance = False

    def __init__(self, *indices: int):
        if not indices:
            raise ConfigurationError("IndexedFeatures requires at least one index")
        self.indices: Tuple[int, ...] = tuple(int(i) for i in indices)

    def select(self, relevance: Optional[torch.Tensor], n_features: int, batch_size: int) -> torch.Tensor:
        bad = [i for i in self.indices if not 0 <= i < n_features]
        if bad:
            raise ConfigurationError(
                f"Feature indices {bad} out of range for a layer with {n_features} features"
            )
        return torch.tensor(self.indices, dtype=torch.long).repeat(batch_size, 1)

    def __repr__(self) -> str:
        return f"IndexedFeatures{self.indices}"


Features = Union[TopNFeatures, IndexedFeatures]


class CRP(BaseAnalyzer):
    """
    Concept Relevance Propagation analyzer.

    Attributes:
        lrp: The LRP analyzer supplying graph and rules
        node: Graph node whose output features are the concepts
        features: Feature selector
    """

    method = "CRP"

    def __init__(self, lrp: LRP, layer: Union[int, str], features: Features):
        """
        Args:
            lrp: A configured LRP analyzer.
            layer: Leaf position (int) or dotted node name (str) of the layer
                whose output features are the concepts.
            features: TopNFeatures or IndexedFeatures.

        Raises:
            ConfigurationError: If the layer cannot be found.
        """
        if not isinstance(lrp, LRP):
            raise TypeError(f"CRP requires an LRP analyzer, got {type(lrp).__name__}")
        if not isinstance(features, (TopNFeatures, IndexedFeatures)):
            raise TypeError(
                f"features must be TopNFeatures or IndexedFeatures, got {type(features).__name__}"
            )
        try:
            if isinstance(layer, str):
                self.node = lrp.graph.find(layer)
            else:
                self.node = lrp.graph.leaf(layer)
        except (KeyError, IndexError) as e:
            raise ConfigurationError(f"CRP layer {layer!r} not found: {e}") from e

        self.lrp = lrp
        self.features = features

    def _layer_relevance(self, x, outputs, output_selection) -> torch.Tensor:
        recorded = {}

        def record(node: Node, relevance: torch.Tensor) -> torch.Tensor:
            recorded["relevance"] = relevance
            return relevance

        self.lrp._explain(x, outputs, output_selection, hooks={self.node.index: record})
        return recorded["relevance"]

    def analyze(self, input, output_selection: OutputSelection = None) -> Explanation:
        """
        Generate one conditional explanation per selected concept.

        Args:
            input: Input tensor, batch first.
            output_selection: As for LRP.analyze.

        Returns:
            Explanation whose attribution has batch size ``N * n_concepts``,
            concept-major. ``extras["features"]`` holds the selected feature
            indices, shape (N, n_concepts).
        """
        x = self.lrp._prepare_input(input)
        outputs = self.lrp.graph.forward(x)
        layer_output = outputs[self.node.index]
        if layer_output.dim() < 2:
            raise ConfigurationError(
                f"CRP layer '{self.node.name}' has no feature axis "
                f"(output shape {tuple(layer_output.shape)})"
            )
        n, n_features = layer_output.shape[0], layer_output.shape[1]

        relevance = None
        if self.features.needs_relevance:
            relevance = self._layer_relevance(x, outputs, output_selection)
        features = self.features.select(relevance, n_features, n).to(layer_output.device)

        explanations = []
        for concept in range(features.shape[1]):
            mask = F.one_hot(features[:, concept], n_features).to(layer_output.dtype)
            mask = mask.reshape(mask.shape + (1,) * (layer_output.dim() - 2))

            def keep_feature(node: Node, r: torch.Tensor, mask=mask) -> torch.Tensor:
                return r * mask

            explanations.append(
                self.lrp._explain(
                    x, outputs, output_selection, hooks={self.node.index: keep_feature}
                )
            )
        logger.debug(f"CRP computed {len(explanations)} concepts at '{self.node.name}'")

        first = explanations[0]
        heatmaps = [e.heatmap for e in explanations]
        return Explanation(
            attribution=torch.cat([e.attribution for e in explanations], dim=0),
            input=x,
            output=first.output,
            output_selection=torch.cat([e.output_selection for e in explanations], dim=0),
            method=self.method,
            score=torch.cat([e.score for e in explanations], dim=0),
            relevance_total=None,
            heatmap=None if heatmaps[0] is None else torch.cat(heatmaps, dim=0),
            extras={"features": features, "layer": self.node.name},
        )
