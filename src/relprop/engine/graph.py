# src/relprop/engine/graph.py
"""
Flat, topologically ordered view of a model.

A model built from nn.Sequential, Parallel and SkipConnection is a DAG of
leaf layers joined by merge points. Graph flattens it into an arena of Nodes
addressed by integer index, with parent edges only. Construction order is a
topological order, so a forward pass is a single loop over the nodes and
relevance propagation a single loop in reverse.

Node kinds:
    - leaf nodes hold one layer (Linear, Conv, ReLU, ...)
    - merge nodes hold the Parallel / SkipConnection module that combines
      their parents' outputs ("add" or "cat")

Example:
    >>> model = nn.Sequential(nn.Linear(4, 4), SkipConnection(nn.Linear(4, 4)))
    >>> graph = Graph.from_model(model)
    >>> print(graph)
    Graph(
      0 0            linear          parents=[input]
      1 1.layers     linear          parents=[0]
      2 1            skip_connection parents=[1, 0]
    )
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

import torch
import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.layers.kinds import (
    CONTAINER_KINDS,
    RESHAPING_KINDS,
    LayerKind,
    layer_kind,
)
from relprop.layers.modules import Parallel, SkipConnection, combine

logger = logging.getLogger(__name__)


# Parent index standing for the model input
INPUT = -1


@dataclass
class Node:
    """
    One vertex of the graph.

    Attributes:
        index: Position in the arena, also a topological rank.
        name: Dotted path of the module inside the model ("" for the root).
        kind: LayerKind of the module.
        layer: The module itself.
        parents: Indices of the nodes whose outputs this node consumes,
            INPUT for the model input. Leaves have exactly one parent.
        position: Rank among leaf nodes, None for merge nodes.
        reads_input: Whether the node sees the raw model input, possibly
            through flatten, dropout or identity layers.
    """

    index: int
    name: str
    kind: LayerKind
    layer: nn.Module
    parents: List[int] = field(default_factory=list)
    position: Optional[int] = None
    reads_input: bool = False

    @property
    def is_merge(self) -> bool:
        return self.kind in CONTAINER_KINDS

    @property
    def is_leaf(self) -> bool:
        return not self.is_merge


class Graph:
    """
    Arena of Nodes in topological order.

    Attributes:
        nodes: All nodes, index i at position i.
        output: Index of the node producing the model output, INPUT for an
            empty model.
    """

    def __init__(self, nodes: List[Node], output: int):
        self.nodes = nodes
        self.output = output

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def from_model(cls, model: nn.Module) -> "Graph":
        """
        Flatten a model into a graph.

        Args:
            model: Module built from nn.Sequential, Parallel, SkipConnection
                and supported leaf layers.

        Returns:
            The graph.

        Raises:
            ConfigurationError: If the model contains an unsupported layer.
        """
        builder = _GraphBuilder()
        output = builder.add(model, INPUT, "")
        graph = cls(builder.nodes, output)
        logger.debug(
            f"Built graph with {len(graph.nodes)} nodes "
            f"({len(graph.leaves())} leaves)"
        )
        return graph

    # =========================================================================
    # Queries
    # =========================================================================

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __getitem__(self, index: int) -> Node:
        return self.nodes[index]

    def leaves(self) -> List[Node]:
        """Leaf nodes in graph order."""
        return [node for node in self.nodes if node.is_leaf]

    def n_leaves(self) -> int:
        return len(self.leaves())

    def leaf(self, position: int) -> Node:
        """
        Get a leaf node by its leaf position.

        Raises:
            IndexError: If no leaf has that position.
        """
        leaves = self.leaves()
        if not -len(leaves) <= position < len(leaves):
            raise IndexError(
                f"Leaf position {position} out of range for a graph with "
                f"{len(leaves)} leaves"
            )
        return leaves[position]

    def find(self, name: str) -> Node:
        """
        Get a node by its dotted module name.

        Raises:
            KeyError: If no node has that name.
        """
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(
            f"No node named '{name}'. Available: {[n.name for n in self.nodes]}"
        )

    def children(self, index: int) -> List[int]:
        """Indices of the nodes consuming a node's output, one entry per edge."""
        return [
            node.index
            for node in self.nodes
            for parent in node.parents
            if parent == index
        ]

    # =========================================================================
    # Forward
    # =========================================================================

    def inputs_of(self, node: Node, x: torch.Tensor, outputs: List[torch.Tensor]) -> List[torch.Tensor]:
        """Tensors feeding a node."""
        return [x if p == INPUT else outputs[p] for p in node.parents]

    def forward(self, x: torch.Tensor) -> List[torch.Tensor]:
        """
        Run the model node by node, caching every output.

        Args:
            x: Model input, batch first.

        Returns:
            Output of every node, by node index. The model output is
            ``outputs[graph.output]`` (or ``x`` for an empty graph).
        """
        outputs: List[torch.Tensor] = []
        with torch.no_grad():
            for node in self.nodes:
                inputs = self.inputs_of(node, x, outputs)
                if node.is_merge:
                    out = combine(node.layer.connection, inputs, node.layer.dim)
                else:
                    out = node.layer(inputs[0])
                outputs.append(out)
        return outputs

    def output_of(self, x: torch.Tensor, outputs: List[torch.Tensor]) -> torch.Tensor:
        return x if self.output == INPUT else outputs[self.output]

    def __repr__(self) -> str:
        width = max([len(n.name) for n in self.nodes] + [4])
        lines = ["Graph("]
        for node in self.nodes:
            parents = ", ".join("input" if p == INPUT else str(p) for p in node.parents)
            lines.append(
                f"  {node.index} {node.name or '<root>':<{width}} "
                f"{node.kind.value:<15} parents=[{parents}]"
            )
        lines.append(")")
        return "\n".join(lines)


class _GraphBuilder:
    """Recursive flattening of nested containers into an arena."""

    def __init__(self):
        self.nodes: List[Node] = []
        self._n_leaves = 0
        # Nodes whose output is still the raw model input
        self._raw = {INPUT}

    def _join(self, prefix: str, name: str) -> str:
        return f"{prefix}.{name}" if prefix else name

    def add(self, module: nn.Module, parent: int, name: str) -> int:
        """Add a module reading from `parent`; return the index of its output."""
        if isinstance(module, nn.Sequential):
            current = parent
            for child_name, child in module.named_children():
                current = self.add(child, current, self._join(name, child_name))
            return current

        if isinstance(module, Parallel):
            branch_outputs = [
                self.add(branch, parent, self._join(name, f"branches.{i}"))
                for i, branch in enumerate(module.branches)
            ]
            return self._append(name, LayerKind.PARALLEL, module, branch_outputs)

        if isinstance(module, SkipConnection):
            branch_output = self.add(module.layers, parent, self._join(name, "layers"))
            return self._append(name, LayerKind.SKIP_CONNECTION, module, [branch_output, parent])

        try:
            kind = layer_kind(module)
        except ConfigurationError as e:
            where = f" at '{name}'" if name else ""
            raise ConfigurationError(f"{e}{where}") from e
        return self._append(name, kind, module, [parent])

    def _append(self, name: str, kind: LayerKind, layer: nn.Module, parents: List[int]) -> int:
        index = len(self.nodes)
        node = Node(index=index, name=name, kind=kind, layer=layer, parents=parents)
        if node.is_leaf:
            node.position = self._n_leaves
            self._n_leaves += 1
            node.reads_input = parents[0] in self._raw
            if node.reads_input and kind in RESHAPING_KINDS:
                self._raw.add(index)
        self.nodes.append(node)
        return index
