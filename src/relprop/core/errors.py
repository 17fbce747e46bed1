# src/relprop/core/errors.py
"""
Exception taxonomy for relevance propagation.

All errors are raised eagerly, as soon as they can be detected, and carry
enough context (rule, layer type, graph position) to localize the fault.
Near-zero denominators are not errors: they are absorbed by stabilization.
"""


class LRPError(Exception):
    """Base class for all errors raised by relprop."""


class ConfigurationError(LRPError, ValueError):
    """
    Raised when an analyzer cannot be assembled as requested.

    Typical causes:
        - a rule assigned to a layer kind it does not support
        - an unsupported layer type in the model
        - a canonization pattern that is not recognized
        - invalid rule hyperparameters
    """


class ShapeMismatchError(LRPError, ValueError):
    """Raised when an activation or relevance tensor has an unexpected shape."""


class NumericalError(LRPError, ArithmeticError):
    """Raised when a propagation step produces NaN or infinite relevance."""
