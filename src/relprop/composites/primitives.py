# src/relprop/composites/primitives.py
"""
Composites: assigning rules to the layers of a model.

A Composite is an ordered list of primitives. Each primitive assigns rules
to some leaf nodes of a Graph; later primitives override earlier ones.
Leaves no primitive matches get a default chosen by layer kind.

Position-based primitives address leaves by their leaf position in graph
order (0 is the first layer, negative positions count from the end).
Type-based primitives take a mapping from keys to rules, where a key is

    - a module class, e.g. nn.Linear
    - a tuple of module classes, e.g. (nn.Conv1d, nn.Conv2d)
    - a LayerKind, e.g. LayerKind.CONVOLUTION
    - a frozenset of LayerKinds, e.g. NORMALIZATION_KINDS

and the first matching key of the mapping wins.

Example:
    composite = Composite(
        GlobalTypeMap({
            LayerKind.CONVOLUTION: GammaRule(),
            nn.Linear: EpsilonRule(),
        }),
        FirstLayerTypeMap({LayerKind.CONVOLUTION: ZBoxRule(-1.0, 1.0)}),
    )
    rules = composite.assign(Graph.from_model(model))
"""

import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, Union

import torch.nn as nn

from relprop.core.errors import ConfigurationError
from relprop.engine.graph import Graph, Node
from relprop.layers.kinds import LayerKind, PASSTHROUGH_KINDS
from relprop.rules.compat import check_compatible
from relprop.rules.rules import LayerNormRule, LRPRule, PassRule, ZeroRule

logger = logging.getLogger(__name__)


RuleKey = Union[Type[nn.Module], Tuple[Type[nn.Module], ...], LayerKind, frozenset]
RuleMapping = Union[Mapping[RuleKey, LRPRule], Sequence[Tuple[RuleKey, LRPRule]]]


# =============================================================================
# Matching helpers
# =============================================================================

def _validate_rule(rule, where: str) -> LRPRule:
    if not isinstance(rule, LRPRule):
        raise ConfigurationError(
            f"{where} expects an LRPRule, got {type(rule).__name__}"
        )
    return rule


def _validate_key(key) -> RuleKey:
    if isinstance(key, LayerKind):
        return key
    if isinstance(key, frozenset) and all(isinstance(k, LayerKind) for k in key):
        return key
    if isinstance(key, type) and issubclass(key, nn.Module):
        return key
    if isinstance(key, tuple) and key and all(
        isinstance(k, type) and issubclass(k, nn.Module) for k in key
    ):
        return key
    raise ConfigurationError(
        f"Invalid rule key {key!r}: expected a module class, a tuple of module "
        f"classes, a LayerKind or a frozenset of LayerKinds"
    )


def key_matches(key: RuleKey, node: Node) -> bool:
    """Whether a rule key selects a node."""
    if isinstance(key, LayerKind):
        return node.kind is key
    if isinstance(key, frozenset):
        return node.kind in key
    return isinstance(node.layer, key)


class _TypeTable:
    """Ordered key → rule table; the first matching key wins."""

    def __init__(self, mapping: RuleMapping):
        items = mapping.items() if isinstance(mapping, Mapping) else mapping
        self.entries: List[Tuple[RuleKey, LRPRule]] = [
            (_validate_key(key), _validate_rule(rule, "Type map"))
            for key, rule in items
        ]
        if not self.entries:
            raise ConfigurationError("Type map must contain at least one entry")

    def lookup(self, node: Node) -> Optional[LRPRule]:
        for key, rule in self.entries:
            if key_matches(key, node):
                return rule
        return None

    def __repr__(self) -> str:
        def name(key):
            if isinstance(key, LayerKind):
                return key.value
            if isinstance(key, frozenset):
                return "{" + ", ".join(sorted(k.value for k in key)) + "}"
            if isinstance(key, tuple):
                return "(" + ", ".join(k.__name__ for k in key) + ")"
            return key.__name__
        return "{" + ", ".join(f"{name(k)}: {r!r}" for k, r in self.entries) + "}"


def _normalize_position(position: int, n_leaves: int) -> int:
    normalized = position + n_leaves if position < 0 else position
    if not 0 <= normalized < n_leaves:
        raise ConfigurationError(
            f"Layer position {position} out of range for a model with {n_leaves} layers"
        )
    return normalized


# =============================================================================
# Primitives
# =============================================================================

class CompositePrimitive(ABC):
    """A single rule-assignment step of a Composite."""

    @abstractmethod
    def apply(self, graph: Graph, assignment: Dict[int, LRPRule]) -> None:
        """Write rules into ``assignment`` (leaf node index → rule)."""


class _PositionPrimitive(CompositePrimitive):
    """Assigns one rule to the leaves at selected positions."""

    def __init__(self, rule: LRPRule):
        self.rule = _validate_rule(rule, type(self).__name__)

    @abstractmethod
    def positions(self, n_leaves: int) -> Iterable[int]:
        ...

    def apply(self, graph: Graph, assignment: Dict[int, LRPRule]) -> None:
        leaves = graph.leaves()
        for position in self.positions(len(leaves)):
            assignment[leaves[position].index] = self.rule


class _TypePrimitive(CompositePrimitive):
    """Assigns rules by type to the leaves at selected positions."""

    def __init__(self, mapping: RuleMapping):
        self.table = _TypeTable(mapping)

    @abstractmethod
    def positions(self, n_leaves: int) -> Iterable[int]:
        ...

    def apply(self, graph: Graph, assignment: Dict[int, LRPRule]) -> None:
        leaves = graph.leaves()
        for position in self.positions(len(leaves)):
            node = leaves[position]
            rule = self.table.lookup(node)
            if rule is not None:
                assignment[node.index] = rule

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.table!r})"


class LayerMap(_PositionPrimitive):
    """Apply a rule to the layer at one position."""

    def __init__(self, position: int, rule: LRPRule):
        super().__init__(rule)
        self.position = position

    def positions(self, n_leaves: int) -> Iterable[int]:
        return [_normalize_position(self.position, n_leaves)]

    def __repr__(self) -> str:
        return f"LayerMap({self.position}, {self.rule!r})"


class GlobalMap(_PositionPrimitive):
    """Apply a rule to every layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(n_leaves)

    def __repr__(self) -> str:
        return f"GlobalMap({self.rule!r})"


class RangeMap(_PositionPrimitive):
    """Apply a rule to the layers whose positions lie in a range."""

    def __init__(self, positions: range, rule: LRPRule):
        super().__init__(rule)
        if not isinstance(positions, range):
            raise ConfigurationError(f"RangeMap expects a range, got {type(positions).__name__}")
        self.range = positions

    def positions(self, n_leaves: int) -> Iterable[int]:
        return [p for p in self.range if 0 <= p < n_leaves]

    def __repr__(self) -> str:
        return f"RangeMap({self.range!r}, {self.rule!r})"


class FirstLayerMap(_PositionPrimitive):
    """Apply a rule to the first layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(min(1, n_leaves))

    def __repr__(self) -> str:
        return f"FirstLayerMap({self.rule!r})"


class LastLayerMap(_PositionPrimitive):
    """Apply a rule to the last layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(max(0, n_leaves - 1), n_leaves)

    def __repr__(self) -> str:
        return f"LastLayerMap({self.rule!r})"


class GlobalTypeMap(_TypePrimitive):
    """Apply rules by type to every layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(n_leaves)


class RangeTypeMap(_TypePrimitive):
    """Apply rules by type to the layers whose positions lie in a range."""

    def __init__(self, positions: range, mapping: RuleMapping):
        super().__init__(mapping)
        if not isinstance(positions, range):
            raise ConfigurationError(
                f"RangeTypeMap expects a range, got {type(positions).__name__}"
            )
        self.range = positions

    def positions(self, n_leaves: int) -> Iterable[int]:
        return [p for p in self.range if 0 <= p < n_leaves]

    def __repr__(self) -> str:
        return f"RangeTypeMap({self.range!r}, {self.table!r})"


class FirstLayerTypeMap(_TypePrimitive):
    """Apply rules by type to the first layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(min(1, n_leaves))


class LastLayerTypeMap(_TypePrimitive):
    """Apply rules by type to the last layer."""

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(max(0, n_leaves - 1), n_leaves)


class FirstNTypeMap(_TypePrimitive):
    """Apply rules by type to the first n layers."""

    def __init__(self, n: int, mapping: RuleMapping):
        super().__init__(mapping)
        if n < 0:
            raise ConfigurationError(f"FirstNTypeMap requires n >= 0, got {n}")
        self.n = n

    def positions(self, n_leaves: int) -> Iterable[int]:
        return range(min(self.n, n_leaves))

    def __repr__(self) -> str:
        return f"FirstNTypeMap({self.n}, {self.table!r})"


class NameMap(CompositePrimitive):
    """
    Apply rules by dotted module name.

    Names may be shell-style patterns ("features.*"); the first matching
    pattern wins.
    A pattern that matches no layer raises ConfigurationError.
    """

    def __init__(self, mapping: Mapping[str, LRPRule]):
        if not mapping:
            raise ConfigurationError("NameMap must contain at least one entry")
        self.entries = [
            (str(pattern), _validate_rule(rule, "NameMap"))
            for pattern, rule in mapping.items()
        ]

    def apply(self, graph: Graph, assignment: Dict[int, LRPRule]) -> None:
        names = [node.name for node in graph.leaves()]
        for pattern, _ in self.entries:
            if not any(fnmatch.fnmatchcase(name, pattern) for name in names):
                raise ConfigurationError(
                    f"NameMap pattern '{pattern}' matches no layer; layers are "
                    f"{names}. Canonization fuses BatchNorm into the preceding layer, "
                    f"so BatchNorm names do not exist in a canonized model"
                )

        for node in graph.leaves():
            for pattern, rule in self.entries:
                if fnmatch.fnmatchcase(node.name, pattern):
                    assignment[node.index] = rule
                    break

    def __repr__(self) -> str:
        return f"NameMap({dict(self.entries)!r})"


# =============================================================================
# Composite
# =============================================================================

def default_rule(node: Node) -> LRPRule:
    """Rule for a leaf no primitive matched."""
    if node.kind is LayerKind.LAYER_NORM:
        return LayerNormRule()
    if node.kind in PASSTHROUGH_KINDS:
        return PassRule()
    return ZeroRule()


class Composite:
    """
    Ordered collection of primitives assigning rules to a model's layers.

    Args:
        *primitives: Applied in order; later primitives override earlier ones.
        default: Optional rule for unmatched leaves whose kind it supports.
            Other unmatched leaves get the kind default (PassRule for
            activations, flatten, dropout and identity, LayerNormRule for
            LayerNorm, ZeroRule otherwise).

    Example:
        >>> composite = Composite(GlobalTypeMap({nn.Linear: EpsilonRule()}))
        >>> rules = composite.assign(graph)
    """

    def __init__(self, *primitives: CompositePrimitive, default: Optional[LRPRule] = None):
        for primitive in primitives:
            if not isinstance(primitive, CompositePrimitive):
                raise ConfigurationError(
                    f"Composite expects primitives, got {type(primitive).__name__}"
                )
        if default is not None:
            _validate_rule(default, "Composite default")
        self.primitives = list(primitives)
        self.default = default

    def _fallback(self, node: Node) -> LRPRule:
        if self.default is not None and node.kind in self.default.compatible_kinds:
            if not self.default.first_layer_only or node.reads_input:
                return self.default
        return default_rule(node)

    def assign(self, graph: Graph, check: bool = True) -> Dict[int, LRPRule]:
        """
        Assign a rule to every leaf of a graph.

        Args:
            graph: Graph of the model.
            check: Verify rule/layer compatibility.

        Returns:
            Mapping from leaf node index to rule.

        Raises:
            ConfigurationError: If ``check`` is set and a rule is assigned to
                a layer it does not support.
        """
        assignment: Dict[int, LRPRule] = {}
        for primitive in self.primitives:
            primitive.apply(graph, assignment)

        rules: Dict[int, LRPRule] = {}
        for node in graph.leaves():
            rule = assignment.get(node.index)
            if rule is None:
                rule = self._fallback(node)
            if check:
                check_compatible(
                    rule,
                    node.layer,
                    first_layer=node.reads_input,
                    position=f"node {node.index} ('{node.name}')",
                )
            rules[node.index] = rule
            logger.debug(f"Layer {node.position} ({node.name}): {rule!r}")
        return rules

    def __repr__(self) -> str:
        inner = ",\n".join(f"  {p!r}" for p in self.primitives)
        default = f",\n  default={self.default!r}" if self.default is not None else ""
        return f"Composite(\n{inner}{default}\n)"


def rules_for_layers(graph: Graph, rules: Sequence[LRPRule], check: bool = True) -> Dict[int, LRPRule]:
    """
    Assign an explicit list of rules, one per leaf in graph order.

    Raises:
        ConfigurationError: If the number of rules does not match the number
            of leaves, or a rule is incompatible with its layer.
    """
    leaves = graph.leaves()
    if len(rules) != len(leaves):
        raise ConfigurationError(
            f"Got {len(rules)} rules for a model with {len(leaves)} layers"
        )
    primitives = [LayerMap(i, rule) for i, rule in enumerate(rules)]
    return Composite(*primitives).assign(graph, check=check)

