# tests/test_registry.py
"""
Test suite for the CompositeRegistry - named composite factories with
metadata for discovery.
"""

import pytest
import torch.nn as nn

from relprop.composites import Composite, GlobalTypeMap
from relprop.core.registry import (
    CompositeMeta,
    CompositeRegistry,
    default_registry,
    get_default_registry,
)
from relprop.rules import EpsilonRule, ZBoxRule


def make_epsilon(epsilon=1e-6):
    return Composite(GlobalTypeMap({nn.Linear: EpsilonRule(epsilon)}))


# =============================================================================
# Registry Core Tests
# =============================================================================

def test_registry_register_and_retrieve():
    """Composites can be registered and retrieved by name."""
    registry = CompositeRegistry()

    registry.register(
        name="eps",
        factory=make_epsilon,
        meta=CompositeMeta(model_types=["mlp"], description="Epsilon on linear layers")
    )

    assert "eps" in registry.list_composites()
    assert registry.get("eps")["factory"] is make_epsilon


def test_registry_prevents_duplicate_registration():
    """Registry raises error on duplicate name registration."""
    registry = CompositeRegistry()
    registry.register("eps", make_epsilon, CompositeMeta())

    with pytest.raises(ValueError, match="already registered"):
        registry.register("eps", make_epsilon, CompositeMeta())


def test_registry_allows_override_with_flag():
    registry = CompositeRegistry()
    registry.register("eps", make_epsilon, CompositeMeta(description="first"))
    registry.register("eps", make_epsilon, CompositeMeta(description="second"), override=True)

    assert registry.get_meta("eps").description == "second"


def test_registry_get_unknown_raises():
    registry = CompositeRegistry()
    with pytest.raises(KeyError, match="not registered"):
        registry.get("missing")
    with pytest.raises(KeyError):
        registry.unregister("missing")


def test_registry_unregister():
    registry = CompositeRegistry()
    registry.register("eps", make_epsilon, CompositeMeta())
    registry.unregister("eps")
    assert registry.list_composites() == []


def test_registry_create_passes_kwargs():
    """create() forwards keyword arguments to the factory."""
    registry = CompositeRegistry()
    registry.register("eps", make_epsilon, CompositeMeta())

    composite = registry.create("eps", epsilon=0.5)

    assert isinstance(composite, Composite)
    assert composite.primitives[0].table.entries[0][1] == EpsilonRule(0.5)


def test_registry_decorator():
    registry = CompositeRegistry()

    @registry.register_decorator(name="decorated", meta=CompositeMeta(requires_bounds=True))
    def decorated():
        return Composite()

    assert "decorated" in registry.list_composites()
    assert decorated is registry.get("decorated")["factory"]


# =============================================================================
# Filtering
# =============================================================================

def test_meta_matches():
    meta = CompositeMeta(model_types=["cnn"], requires_bounds=True)
    assert meta.matches()
    assert meta.matches(model_type="cnn")
    assert not meta.matches(model_type="mlp")
    assert not meta.matches(requires_bounds=False)
    assert CompositeMeta().matches(model_type="mlp")


def test_registry_filter():
    registry = CompositeRegistry()
    registry.register("cnn_only", make_epsilon, CompositeMeta(model_types=["cnn"]))
    registry.register("anything", make_epsilon, CompositeMeta())
    registry.register("bounded", make_epsilon, CompositeMeta(requires_bounds=True))

    assert set(registry.filter(model_type="cnn")) == {"cnn_only", "anything", "bounded"}
    assert registry.filter(model_type="mlp") == ["anything", "bounded"]
    assert registry.filter(requires_bounds=True) == ["bounded"]


def test_registry_summary():
    registry = CompositeRegistry()
    registry.register("bounded", make_epsilon, CompositeMeta(description="Needs bounds", requires_bounds=True))

    summary = registry.summary()

    assert "bounded: Needs bounds [needs input bounds]" in summary
    assert "Total: 1 composites" in summary


def test_list_with_meta():
    registry = CompositeRegistry()
    registry.register("eps", make_epsilon, CompositeMeta(description="x"))
    listing = registry.list_composites(with_meta=True)
    assert listing["eps"]["meta"].description == "x"


# =============================================================================
# Default Registry
# =============================================================================

def test_default_registry_presets():
    """All preset composites are registered by default."""
    names = set(default_registry.list_composites())
    assert names == {
        "epsilon_gamma_box",
        "epsilon_plus",
        "epsilon_alpha2_beta1",
        "epsilon_plus_flat",
        "epsilon_alpha2_beta1_flat",
        "epsilon_flat",
    }
    assert "epsilon_plus" in default_registry


def test_default_registry_bounds():
    assert default_registry.filter(requires_bounds=True) == ["epsilon_gamma_box"]

    composite = default_registry.create("epsilon_gamma_box", low=-1.0, high=1.0)
    rules = [rule for _, rule in composite.primitives[1].table.entries]
    assert rules == [ZBoxRule(-1.0, 1.0)]


def test_get_default_registry_is_shared():
    assert get_default_registry() is get_default_registry()
    assert default_registry.list_composites() == get_default_registry().list_composites()
