# src/relprop/core/__init__.py
"""
relprop core components.
"""

from relprop.core.errors import (
    ConfigurationError,
    LRPError,
    NumericalError,
    ShapeMismatchError,
)
from relprop.core.explanation import Explanation
from relprop.core.analyzer import BaseAnalyzer
from relprop.core.registry import (
    CompositeMeta,
    CompositeRegistry,
    default_registry,
    get_default_registry,
)

__all__ = [
    "ConfigurationError",
    "LRPError",
    "NumericalError",
    "ShapeMismatchError",
    "Explanation",
    "BaseAnalyzer",
    "CompositeMeta",
    "CompositeRegistry",
    "default_registry",
    "get_default_registry",
]
