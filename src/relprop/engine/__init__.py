# src/relprop/engine/__init__.py
"""
Propagation engine: the single-layer step, the model graph and the
reverse-traversal driver.
"""

from relprop.engine.step import lrp, lrp_
from relprop.engine.graph import INPUT, Graph, Node
from relprop.engine.driver import (
    NodeState,
    PropagationResult,
    RelevanceHook,
    propagate,
    split_merge,
)

__all__ = [
    "lrp",
    "lrp_",
    "INPUT",
    "Graph",
    "Node",
    "NodeState",
    "PropagationResult",
    "RelevanceHook",
    "propagate",
    "split_merge",
]
