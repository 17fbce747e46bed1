# src/relprop/core/analyzer.py
"""
Base class for analyzers.
"""

from abc import ABC, abstractmethod

from relprop.core.explanation import Explanation


class BaseAnalyzer(ABC):
    """
    Abstract base class for all analyzers.

    An analyzer wraps a model and turns an input batch into an Explanation.
    Calling the analyzer is the same as calling ``analyze``.
    """

    method: str = "analyzer"

    @abstractmethod
    def analyze(self, input, output_selection=None, **kwargs) -> Explanation:
        """
        Explain the model's output for an input batch.

        Args:
            input: Input tensor, batch first.
            output_selection: Which output to explain: None for the maximal
                output of each sample, an int for the same output for every
                sample, or one index per sample.

        Returns:
            Explanation object.
        """
        raise NotImplementedError("Subclasses must implement analyze()")

    def __call__(self, input, output_selection=None, **kwargs) -> Explanation:
        return self.analyze(input, output_selection, **kwargs)
