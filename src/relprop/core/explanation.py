# src/relprop/core/explanation.py
"""
Unified container for relevance propagation results.

The Explanation class holds what an analyzer produced for a batch: the
input attribution, the model output and the selected outputs it explains,
plus optional method-specific extras (layer-wise relevances, CRP features).
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch


class Explanation:
    """
    Unified container for explanation results.

    Attributes:
        attribution: Relevance of each input element, same shape as input.
        input: The analyzed input, batch first.
        output: Model output for the input.
        output_selection: Index of the explained output per sample, into the
            output flattened to (N, -1).
        method: Name of the analyzer that produced this explanation.
        score: Value of the selected output per sample.
        relevance_total: Relevance injected at the output per sample.
        heatmap: Optional attribution reduced over the channel axis.
        extras: Method-specific results, e.g. "layerwise_relevances" or
            "features".

    Example:
        >>> explanation = analyzer.analyze(x)
        >>> explanation.attribution.shape == x.shape
        True
        >>> explanation.convergence_delta()   # ~0 for conservative rules
    """

    def __init__(
        self,
        attribution: torch.Tensor,
        input: torch.Tensor,
        output: torch.Tensor,
        output_selection: torch.Tensor,
        method: str,
        score: Optional[torch.Tensor] = None,
        relevance_total: Optional[torch.Tensor] = None,
        heatmap: Optional[torch.Tensor] = None,
        extras: Optional[Dict[str, Any]] = None
    ):
        self.attribution = attribution
        self.input = input
        self.output = output
        self.output_selection = output_selection
        self.method = method
        self.score = score
        self.relevance_total = relevance_total
        self.heatmap = heatmap
        self.extras = extras or {}

    def __repr__(self):
        return (
            f"Explanation(method='{self.method}', "
            f"attribution_shape={tuple(self.attribution.shape)}, "
            f"output_selection={self.output_selection.tolist()}, "
            f"extras={list(self.extras.keys())})"
        )

    @property
    def batch_size(self) -> int:
        return self.attribution.shape[0]

    def attribution_sum(self) -> torch.Tensor:
        """
        Total relevance per sample.

        Returns:
            Tensor of shape (N,).
        """
        return self.attribution.reshape(self.batch_size, -1).sum(dim=1)

    def convergence_delta(self) -> torch.Tensor:
        """
        Conservation gap per sample: |relevance injected - relevance recovered|.

        Close to 0 for conservative rules on bias-free models.

        Raises:
            ValueError: If the explanation carries no relevance_total.
        """
        if self.relevance_total is None:
            raise ValueError("Explanation has no relevance_total to compare against")
        return (self.relevance_total - self.attribution_sum()).abs()

    def top_features(self, k: int = 5, sample: int = 0, absolute: bool = True) -> List[Tuple[int, float]]:
        """
        Get the k most relevant input elements of one sample.

        Args:
            k: Number of elements to return.
            sample: Index of the sample in the batch.
            absolute: If True, rank by absolute relevance.

        Returns:
            List of (flat input index, relevance) tuples sorted by importance.
        """
        values = self.attribution[sample].reshape(-1)
        keys = values.abs() if absolute else values
        k = min(k, values.numel())
        indices = torch.topk(keys, k).indices
        return [(int(i), float(values[i])) for i in indices]

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the explanation to a dictionary of numpy arrays.

        Returns:
            Dictionary representation of the explanation.
        """
        def to_numpy(t):
            return None if t is None else t.detach().cpu().numpy()

        return {
            "method": self.method,
            "attribution": to_numpy(self.attribution),
            "input": to_numpy(self.input),
            "output": to_numpy(self.output),
            "output_selection": to_numpy(self.output_selection),
            "score": to_numpy(self.score),
            "relevance_total": to_numpy(self.relevance_total),
            "heatmap": to_numpy(self.heatmap),
            "extras": {
                key: to_numpy(value) if isinstance(value, torch.Tensor) else value
                for key, value in self.extras.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Explanation":
        """
        Create an Explanation from a dictionary produced by ``to_dict``.

        Args:
            data: Dictionary with explanation data.

        Returns:
            Explanation instance.
        """
        def to_tensor(a):
            return None if a is None else torch.as_tensor(np.asarray(a))

        return cls(
            attribution=to_tensor(data["attribution"]),
            input=to_tensor(data["input"]),
            output=to_tensor(data["output"]),
            output_selection=to_tensor(data["output_selection"]),
            method=data["method"],
            score=to_tensor(data.get("score")),
            relevance_total=to_tensor(data.get("relevance_total")),
            heatmap=to_tensor(data.get("heatmap")),
            extras={
                key: to_tensor(value) if isinstance(value, np.ndarray) else value
                for key, value in data.get("extras", {}).items()
            },
        )
