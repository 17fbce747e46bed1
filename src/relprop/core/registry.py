# src/relprop/core/registry.py
"""
CompositeRegistry - a plugin system for rule composites.

This module provides a registry that allows:
- Registration of composite factories with metadata
- Filtering/discovery by model type and input requirements
- Instantiation by name with keyword arguments
- Decorator-based registration for clean syntax

Example usage:
    from relprop.core.registry import default_registry, CompositeMeta

    # List available composites
    print(default_registry.list_composites())

    # Create a composite
    composite = default_registry.create("epsilon_gamma_box", low=-1.0, high=1.0)

    # Register a custom composite
    @default_registry.register_decorator(
        name="my_composite",
        meta=CompositeMeta(description="Epsilon everywhere")
    )
    def my_composite():
        return Composite(GlobalTypeMap({nn.Linear: EpsilonRule()}))
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# Factories return a relprop.composites.Composite
CompositeFactory = Callable[..., Any]


@dataclass
class CompositeMeta:
    """
    Metadata for a composite, used for discovery.

    Attributes:
        model_types: Architectures the composite is meant for ("any", "cnn", "mlp")
        description: Human-readable description
        paper_reference: Citation for the recommendation
        requires_bounds: Whether the factory needs input bounds (ZBox)
    """
    model_types: List[str] = field(default_factory=lambda: ["any"])
    description: str = ""
    paper_reference: Optional[str] = None
    requires_bounds: bool = False

    def matches(
        self,
        model_type: Optional[str] = None,
        requires_bounds: Optional[bool] = None
    ) -> bool:
        """Check if this metadata matches the given criteria."""
        if model_type is not None:
            if "any" not in self.model_types and model_type not in self.model_types:
                return False

        if requires_bounds is not None and self.requires_bounds != requires_bounds:
            return False

        return True


class CompositeRegistry:
    """
    Registry of named composite factories.

    Provides:
    - Registration (programmatic and decorator-based)
    - Discovery and filtering
    - Instantiation with keyword arguments
    """

    def __init__(self):
        self._registry: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        name: str,
        factory: CompositeFactory,
        meta: CompositeMeta,
        override: bool = False
    ) -> None:
        """
        Register a composite factory with metadata.

        Args:
            name: Unique identifier (e.g., "epsilon_plus")
            factory: Callable returning a Composite
            meta: Metadata describing the composite
            override: If True, allows overwriting an existing registration

        Raises:
            ValueError: If name is already registered and override=False
        """
        if name in self._registry and not override:
            raise ValueError(f"Composite '{name}' is already registered. Use override=True to replace.")

        self._registry[name] = {
            "factory": factory,
            "meta": meta
        }

    def unregister(self, name: str) -> None:
        """
        Remove a composite from the registry.

        Raises:
            KeyError: If the composite is not registered
        """
        if name not in self._registry:
            raise KeyError(f"Composite '{name}' is not registered.")
        del self._registry[name]

    def get(self, name: str) -> Dict[str, Any]:
        """
        Get the factory and metadata by name.

        Returns:
            Dict with "factory" and "meta" keys

        Raises:
            KeyError: If the composite is not registered
        """
        if name not in self._registry:
            raise KeyError(f"Composite '{name}' is not registered. Available: {list(self._registry.keys())}")
        return self._registry[name]

    def get_meta(self, name: str) -> CompositeMeta:
        return self.get(name)["meta"]

    def list_composites(self, with_meta: bool = False) -> Any:
        """
        List all registered composites.

        Args:
            with_meta: If True, return dict with metadata; if False, return list of names
        """
        if with_meta:
            return dict(self._registry)
        return list(self._registry.keys())

    def filter(
        self,
        model_type: Optional[str] = None,
        requires_bounds: Optional[bool] = None
    ) -> List[str]:
        """
        Filter composites by criteria.

        Returns:
            List of matching composite names
        """
        return [
            name for name, entry in self._registry.items()
            if entry["meta"].matches(model_type, requires_bounds)
        ]

    def create(self, name: str, **kwargs) -> Any:
        """
        Build a composite by name.

        Args:
            name: The composite name
            **kwargs: Arguments passed to the factory

        Raises:
            KeyError: If the composite is not registered
        """
        return self.get(name)["factory"](**kwargs)

    def register_decorator(
        self,
        name: str,
        meta: CompositeMeta
    ) -> Callable[[CompositeFactory], CompositeFactory]:
        """
        Decorator for registering a composite factory.

        Returns:
            Decorator that registers the factory and returns it unchanged
        """
        def decorator(factory: CompositeFactory) -> CompositeFactory:
            self.register(name, factory, meta)
            return factory
        return decorator

    def summary(self) -> str:
        """
        Generate a human-readable summary of all registered composites.
        """
        lines = ["=" * 60, "relprop - Registered Composites", "=" * 60, ""]
        for name, entry in self._registry.items():
            meta: CompositeMeta = entry["meta"]
            bounds = " [needs input bounds]" if meta.requires_bounds else ""
            lines.append(f"  {name}: {meta.description or '(no description)'}{bounds}")
        lines.append("")
        lines.append(f"Total: {len(self._registry)} composites")
        lines.append("=" * 60)
        return "\n".join(lines)


# =============================================================================
# Default Global Registry
# =============================================================================

_KOHLBRENNER = (
    "Kohlbrenner et al., 2020 - 'Towards Best Practice in Explaining Neural "
    "Network Decisions with LRP' (IJCNN)"
)


def _create_default_registry() -> CompositeRegistry:
    """Create and populate the default global registry."""
    from relprop.composites import presets

    registry = CompositeRegistry()

    registry.register(
        name="epsilon_gamma_box",
        factory=presets.epsilon_gamma_box,
        meta=CompositeMeta(
            model_types=["cnn"],
            description="LRP-γ on convolutions, LRP-ε on dense layers, ZBox on the input layer",
            paper_reference="Montavon et al., 2019 - 'Layer-Wise Relevance Propagation: An Overview'",
            requires_bounds=True
        )
    )
    registry.register(
        name="epsilon_plus",
        factory=presets.epsilon_plus,
        meta=CompositeMeta(
            model_types=["cnn"],
            description="LRP-z⁺ on convolutions, LRP-ε on dense layers",
            paper_reference=_KOHLBRENNER
        )
    )
    registry.register(
        name="epsilon_alpha2_beta1",
        factory=presets.epsilon_alpha2_beta1,
        meta=CompositeMeta(
            model_types=["cnn"],
            description="LRP-α2β1 on convolutions, LRP-ε on dense layers",
            paper_reference=_KOHLBRENNER
        )
    )
    registry.register(
        name="epsilon_plus_flat",
        factory=presets.epsilon_plus_flat,
        meta=CompositeMeta(
            model_types=["any"],
            description="epsilon_plus with the flat rule on the input layer",
            paper_reference=_KOHLBRENNER
        )
    )
    registry.register(
        name="epsilon_alpha2_beta1_flat",
        factory=presets.epsilon_alpha2_beta1_flat,
        meta=CompositeMeta(
            model_types=["any"],
            description="epsilon_alpha2_beta1 with the flat rule on the input layer",
            paper_reference=_KOHLBRENNER
        )
    )
    registry.register(
        name="epsilon_flat",
        factory=presets.epsilon_flat,
        meta=CompositeMeta(
            model_types=["any", "mlp"],
            description="LRP-ε everywhere, flat rule on the input layer",
            paper_reference=_KOHLBRENNER
        )
    )

    return registry


# Lazy initialization to avoid circular imports
_default_registry: Optional[CompositeRegistry] = None


def get_default_registry() -> CompositeRegistry:
    """Get the default global registry (lazy initialization)."""
    global _default_registry
    if _default_registry is None:
        _default_registry = _create_default_registry()
    return _default_registry


class _LazyRegistry:
    """Lazy proxy for the default registry."""

    def __getattr__(self, name):
        return getattr(get_default_registry(), name)

    def __contains__(self, item):
        return item in get_default_registry().list_composites()


default_registry = _LazyRegistry()
