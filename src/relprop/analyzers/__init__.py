# src/relprop/analyzers/__init__.py
"""
Analyzers: LRP and its concept-conditional extension CRP.
"""

from relprop.analyzers.lrp import LRP
from relprop.analyzers.crp import CRP, IndexedFeatures, TopNFeatures, feature_relevance

__all__ = [
    "LRP",
    "CRP",
    "IndexedFeatures",
    "TopNFeatures",
    "feature_relevance",
]
