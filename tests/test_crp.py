# tests/test_crp.py
"""
Tests for Concept Relevance Propagation (CRP).

CRP masks the relevance arriving at an intermediate layer to one feature
before propagating it further. Since propagation is linear in the relevance,
the explanations of all features of a layer add up to the plain LRP
explanation.
"""

from collections import OrderedDict

import pytest
import torch
import torch.nn as nn

from relprop import CRP, LRP, ConfigurationError, IndexedFeatures, TopNFeatures
from relprop.analyzers import feature_relevance


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def classifier():
    torch.manual_seed(42)
    return nn.Sequential(
        nn.Linear(4, 16),
        nn.ReLU(),
        nn.Linear(16, 8),
        nn.ReLU(),
        nn.Linear(8, 3)
    )


@pytest.fixture
def cnn():
    torch.manual_seed(42)
    return nn.Sequential(
        nn.Conv2d(1, 4, 3, padding=1),
        nn.ReLU(),
        nn.Conv2d(4, 6, 3, padding=1),
        nn.ReLU(),
        nn.Flatten(),
        nn.Linear(6 * 6 * 6, 3),
    )


@pytest.fixture
def sample_data():
    torch.manual_seed(0)
    return torch.randn(5, 4)


# =============================================================================
# Feature Selectors
# =============================================================================

class TestFeatureSelectors:
    """TopNFeatures, IndexedFeatures and feature_relevance."""

    def test_feature_relevance_sums_spatial_axes(self):
        relevance = torch.ones(2, 3, 4, 4)
        assert torch.equal(feature_relevance(relevance), torch.full((2, 3), 16.0))

    def test_feature_relevance_needs_feature_axis(self):
        with pytest.raises(ConfigurationError):
            feature_relevance(torch.ones(3))

    def test_top_n(self):
        relevance = torch.tensor([[0.1, 0.5, 0.3], [0.9, 0.0, 0.2]])
        features = TopNFeatures(2).select(relevance, 3, 2)
        assert features.tolist() == [[1, 2], [0, 2]]

    def test_top_n_too_many(self):
        with pytest.raises(ConfigurationError, match="exceeds"):
            TopNFeatures(4).select(torch.ones(1, 3), 3, 1)

    def test_indexed(self):
        features = IndexedFeatures(2, 0).select(None, 3, 2)
        assert features.tolist() == [[2, 0], [2, 0]]

    def test_indexed_out_of_range(self):
        with pytest.raises(ConfigurationError, match="out of range"):
            IndexedFeatures(3).select(None, 3, 1)

    def test_invalid_construction(self):
        with pytest.raises(ConfigurationError):
            TopNFeatures(0)
        with pytest.raises(ConfigurationError):
            IndexedFeatures()


# =============================================================================
# CRP Analyzer
# =============================================================================

class TestCRP:
    """Tests for the CRP analyzer."""

    def test_output_layout(self, classifier, sample_data):
        crp = CRP(LRP(classifier), layer=1, features=IndexedFeatures(0, 3))
        explanation = crp.analyze(sample_data)

        assert explanation.method == "CRP"
        assert explanation.attribution.shape == (10, 4)
        assert explanation.extras["features"].shape == (5, 2)
        assert explanation.extras["layer"] == "1"
        assert explanation.output_selection.shape == (10,)
        assert explanation.relevance_total is None
        with pytest.raises(ValueError):
            explanation.convergence_delta()

    def test_concepts_add_up_to_lrp(self, classifier, sample_data):
        lrp = LRP(classifier)
        crp = CRP(lrp, layer=1, features=IndexedFeatures(*range(16)))

        concepts = crp.analyze(sample_data).attribution.reshape(16, 5, 4)

        expected = lrp.analyze(sample_data).attribution
        assert torch.allclose(concepts.sum(dim=0), expected, atol=1e-5)

    def test_concept_major_order(self, classifier, sample_data):
        lrp = LRP(classifier)
        both = CRP(lrp, layer=1, features=IndexedFeatures(2, 5)).analyze(sample_data)
        second = CRP(lrp, layer=1, features=IndexedFeatures(5)).analyze(sample_data)
        assert torch.allclose(both.attribution[5:], second.attribution)

    def test_top_n_uses_layer_relevance(self, classifier, sample_data):
        lrp = LRP(classifier)
        layerwise = lrp.analyze(sample_data, layerwise_relevances=True).extras["layerwise_relevances"]
        expected = torch.topk(feature_relevance(layerwise["2"]), 3, dim=1).indices

        explanation = CRP(lrp, layer=2, features=TopNFeatures(3)).analyze(sample_data)

        assert torch.equal(explanation.extras["features"], expected)

    def test_layer_by_name(self, classifier, sample_data):
        lrp = LRP(classifier)
        by_position = CRP(lrp, layer=2, features=IndexedFeatures(1)).analyze(sample_data)
        by_name = CRP(lrp, layer="2", features=IndexedFeatures(1)).analyze(sample_data)
        assert torch.equal(by_position.attribution, by_name.attribution)

    def test_layer_by_dotted_name(self, sample_data):
        torch.manual_seed(42)
        model = nn.Sequential(OrderedDict(
            features=nn.Sequential(nn.Linear(4, 8), nn.BatchNorm1d(8), nn.ReLU()),
            classifier=nn.Linear(8, 3),
        ))
        lrp = LRP(model)

        by_name = CRP(lrp, layer="features.0", features=IndexedFeatures(1)).analyze(sample_data)
        by_position = CRP(lrp, layer=0, features=IndexedFeatures(1)).analyze(sample_data)

        assert by_name.extras["layer"] == "features.0"
        assert torch.equal(by_name.attribution, by_position.attribution)

    def test_output_selection(self, classifier, sample_data):
        crp = CRP(LRP(classifier), layer=1, features=IndexedFeatures(0))
        explanation = crp.analyze(sample_data, output_selection=2)
        assert explanation.output_selection.tolist() == [2] * 5

    def test_convolutional_concepts(self, cnn):
        torch.manual_seed(0)
        x = torch.rand(2, 1, 6, 6)
        explanation = CRP(LRP(cnn, "epsilon_plus"), layer=2, features=TopNFeatures(2)).analyze(x)

        assert explanation.attribution.shape == (4, 1, 6, 6)
        assert explanation.heatmap.shape == (4, 6, 6)
        assert torch.isfinite(explanation.attribution).all()

    def test_unknown_layer(self, classifier):
        lrp = LRP(classifier)
        with pytest.raises(ConfigurationError, match="not found"):
            CRP(lrp, layer=10, features=TopNFeatures(1))
        with pytest.raises(ConfigurationError, match="not found"):
            CRP(lrp, layer="features.3", features=TopNFeatures(1))

    def test_feature_count_checked(self, classifier, sample_data):
        crp = CRP(LRP(classifier), layer=3, features=IndexedFeatures(8))
        with pytest.raises(ConfigurationError, match="out of range"):
            crp.analyze(sample_data)

    def test_type_checks(self, classifier):
        with pytest.raises(TypeError, match="LRP analyzer"):
            CRP(classifier, layer=1, features=TopNFeatures(1))
        with pytest.raises(TypeError, match="features"):
            CRP(LRP(classifier), layer=1, features=[0, 1])
