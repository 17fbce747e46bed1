# src/relprop/engine/driver.py
"""
Reverse traversal of a Graph.

Relevance enters at the output node and is pushed to parents in reverse
topological order. Each node moves through explicit states:

    PENDING   waiting for relevance from all of its consumers
    READY     all incoming relevance summed (fan-out is a sum)
    COMPUTED  relevance pushed to its parents
    CONSUMED  its buffers released

Leaves apply their rule through the step engine. Merge nodes split
relevance among their inputs: "add" proportionally to each input's share of
the sum, "cat" by slicing along the concatenation axis.

Example:
    >>> outputs = graph.forward(x)
    >>> result = propagate(graph, rules, modified, outputs, x, relevance)
    >>> result.input_relevance.shape == x.shape
    True
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

import torch

from relprop.core.errors import ConfigurationError, LRPError, ShapeMismatchError
from relprop.engine.graph import INPUT, Graph, Node
from relprop.engine.step import lrp
from relprop.rules.modifiers import ModifiedLayer
from relprop.rules.rules import LRPRule
from relprop.rules.stabilize import DEFAULT_STABILIZER, stabilize_denom

logger = logging.getLogger(__name__)


# A hook receives a node and the relevance of its output and returns the
# relevance to propagate instead
RelevanceHook = Callable[[Node, torch.Tensor], torch.Tensor]


class NodeState(Enum):
    PENDING = "pending"
    READY = "ready"
    COMPUTED = "computed"
    CONSUMED = "consumed"


@dataclass
class PropagationResult:
    """
    Outcome of a reverse traversal.

    Attributes:
        input_relevance: Relevance of the model input, shape of x.
        node_relevances: Relevance of every node output by node index, if
            layerwise collection was requested.
    """

    input_relevance: torch.Tensor
    node_relevances: Optional[Dict[int, torch.Tensor]] = None
    states: List[NodeState] = field(default_factory=list)


def split_merge(node: Node, inputs: List[torch.Tensor], output: torch.Tensor, relevance: torch.Tensor) -> List[torch.Tensor]:
    """
    Distribute a merge node's relevance over its inputs.

    Args:
        node: Merge node.
        inputs: Tensors that were combined, in parent order.
        output: The combined tensor.
        relevance: Relevance of the combined tensor.

    Returns:
        One relevance tensor per input.
    """
    if relevance.shape != output.shape:
        raise ShapeMismatchError(
            f"Relevance of shape {tuple(relevance.shape)} does not match merge "
            f"output of shape {tuple(output.shape)}"
        )
    connection = node.layer.connection
    if connection == "add":
        s = relevance / stabilize_denom(output, DEFAULT_STABILIZER)
        return [a * s for a in inputs]
    if connection == "cat":
        sizes = [a.shape[node.layer.dim] for a in inputs]
        return list(torch.split(relevance, sizes, dim=node.layer.dim))
    raise ConfigurationError(f"Unknown connection '{connection}'")


def propagate(
    graph: Graph,
    rules: Mapping[int, LRPRule],
    modified_layers: Mapping[int, ModifiedLayer],
    outputs: List[torch.Tensor],
    x: torch.Tensor,
    relevance: torch.Tensor,
    hooks: Optional[Mapping[int, RelevanceHook]] = None,
    layerwise: bool = False
) -> PropagationResult:
    """
    Propagate output relevance back to the model input.

    Args:
        graph: Graph of the model.
        rules: Rule per leaf node index.
        modified_layers: Modified layer per leaf node index.
        outputs: Cached forward outputs from ``graph.forward(x)``.
        x: Model input.
        relevance: Relevance of the model output.
        hooks: Optional per-node hooks rewriting a node's output relevance
            once it is complete, before it is propagated further.
        layerwise: If True, keep the relevance of every node output.

    Returns:
        PropagationResult with the input relevance.

    Raises:
        LRPError: Re-raised from a failing node, with the node's index and
            name prepended to the message.
    """
    hooks = hooks or {}
    n = len(graph)
    states = [NodeState.PENDING] * n
    incoming: Dict[int, torch.Tensor] = {}
    node_relevances: Optional[Dict[int, torch.Tensor]] = {} if layerwise else None
    input_relevance = torch.zeros_like(x)

    def deliver(parent: int, contribution: torch.Tensor) -> None:
        nonlocal input_relevance
        if parent == INPUT:
            input_relevance = input_relevance + contribution
        elif parent in incoming:
            incoming[parent] = incoming[parent] + contribution
        else:
            incoming[parent] = contribution

    if graph.output == INPUT:
        deliver(INPUT, relevance)
    else:
        incoming[graph.output] = relevance
        states[graph.output] = NodeState.READY

    for index in range(n - 1, -1, -1):
        node = graph[index]
        if index not in incoming:
            # Does not feed the model output
            states[index] = NodeState.CONSUMED
            continue
        states[index] = NodeState.READY
        r_out = incoming.pop(index)

        try:
            if index in hooks:
                r_out = hooks[index](node, r_out)
            if node_relevances is not None:
                node_relevances[index] = r_out

            inputs = graph.inputs_of(node, x, outputs)
            if node.is_merge:
                contributions = split_merge(node, inputs, outputs[index], r_out)
            else:
                rule = rules.get(index)
                if rule is None:
                    raise ConfigurationError("no rule assigned")
                contributions = [
                    lrp(rule, node.layer, modified_layers.get(index), inputs[0], r_out)
                ]
        except LRPError as e:
            raise type(e)(
                f"Relevance propagation failed at node {index} "
                f"('{node.name}', {type(node.layer).__name__}): {e}"
            ) from e

        states[index] = NodeState.COMPUTED
        for parent, contribution in zip(node.parents, contributions):
            deliver(parent, contribution)
        states[index] = NodeState.CONSUMED

    logger.debug(f"Propagated relevance through {n} nodes")
    return PropagationResult(
        input_relevance=input_relevance,
        node_relevances=node_relevances,
        states=states,
    )
