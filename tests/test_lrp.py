# tests/test_lrp.py
"""
Tests for the Layer-wise Relevance Propagation (LRP) analyzer.

LRP decomposes network predictions back to input features using a conservation
principle. Relevance is propagated layer-by-layer through the network with
rules assigned per layer by a composite.

Key Properties:
- Conservation: Sum of relevances at each layer equals the output relevance
  (exactly, for conservative rules on bias-free models)
- Layer-wise decomposition: Relevance flows backward through layers
- Multiple rules: Different rules for different layer types and positions

Reference:
    Bach, S., Binder, A., Montavon, G., Klauschen, F., Müller, K. R., & Samek, W. (2015).
    On Pixel-wise Explanations for Non-Linear Classifier Decisions by Layer-wise
    Relevance Propagation. PLOS ONE.
    https://doi.org/10.1371/journal.pone.0130140
"""

from collections import OrderedDict

import numpy as np
import pytest
import torch
import torch.nn as nn

from relprop import (
    LRP,
    AlphaBetaRule,
    Composite,
    ConfigurationError,
    EpsilonRule,
    GammaRule,
    GlobalMap,
    GlobalTypeMap,
    NameMap,
    Parallel,
    PassRule,
    ShapeMismatchError,
    SkipConnection,
    ZBoxRule,
    ZeroRule,
    ZPlusRule,
    epsilon_plus,
)
from relprop.composites import PRESETS


# =============================================================================
# Fixtures
# =============================================================================

def _init_bias_free(model):
    torch.manual_seed(42)
    for m in model.modules():
        if isinstance(m, (nn.Linear, nn.Conv2d)):
            nn.init.xavier_uniform_(m.weight)
            if m.bias is not None:
                nn.init.zeros_(m.bias)
    return model


@pytest.fixture
def simple_classifier():
    """Small MLP with zero biases, so that LRP-0 is exactly conservative."""
    model = nn.Sequential(
        nn.Linear(4, 16),
        nn.ReLU(),
        nn.Linear(16, 8),
        nn.ReLU(),
        nn.Linear(8, 3)
    )
    return _init_bias_free(model)


@pytest.fixture
def simple_cnn():
    torch.manual_seed(42)
    return nn.Sequential(
        nn.Conv2d(1, 4, 3, padding=1),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(4, 8, 3, padding=1),
        nn.ReLU(),
        nn.AdaptiveAvgPool2d(1),
        nn.Flatten(),
        nn.Linear(8, 3),
    )


@pytest.fixture
def cnn_with_batchnorm():
    torch.manual_seed(42)
    model = nn.Sequential(
        nn.Conv2d(1, 4, 3, padding=1),
        nn.BatchNorm2d(4),
        nn.ReLU(),
        nn.Flatten(),
        nn.Linear(4 * 8 * 8, 3),
    )
    with torch.no_grad():
        model[1].running_mean.uniform_(-0.5, 0.5)
        model[1].running_var.uniform_(0.5, 2.0)
    return model


@pytest.fixture
def sample_data():
    torch.manual_seed(0)
    return torch.randn(5, 4)


@pytest.fixture
def image_data():
    torch.manual_seed(0)
    return torch.rand(2, 1, 8, 8)


# =============================================================================
# Construction
# =============================================================================

class TestLRPConstruction:
    """Tests for analyzer creation and rule resolution."""

    def test_default_rules(self, simple_classifier):
        analyzer = LRP(simple_classifier)
        rules = [analyzer.rules[node.index] for node in analyzer.graph.leaves()]
        assert rules == [ZeroRule(), PassRule(), ZeroRule(), PassRule(), ZeroRule()]
        assert analyzer.method == "LRP"

    def test_single_rule(self, simple_classifier):
        """A single rule goes to every layer supporting it."""
        analyzer = LRP(simple_classifier, GammaRule(0.1))
        rules = [analyzer.rules[node.index] for node in analyzer.graph.leaves()]
        assert rules[0] == rules[2] == rules[4] == GammaRule(0.1)
        assert rules[1] == PassRule()

    def test_single_first_layer_rule(self, simple_classifier):
        analyzer = LRP(simple_classifier, ZBoxRule(-3.0, 3.0))
        rules = [analyzer.rules[node.index] for node in analyzer.graph.leaves()]
        assert rules[0] == ZBoxRule(-3.0, 3.0)
        assert rules[2] == ZeroRule()

    def test_rule_list(self, simple_classifier):
        rules = [EpsilonRule(), PassRule(), GammaRule(), PassRule(), ZeroRule()]
        analyzer = LRP(simple_classifier, rules)
        assert [analyzer.rules[node.index] for node in analyzer.graph.leaves()] == rules

    def test_rule_list_wrong_length(self, simple_classifier):
        with pytest.raises(ConfigurationError):
            LRP(simple_classifier, [ZeroRule()])

    def test_registry_name(self, simple_cnn):
        analyzer = LRP(simple_cnn, "epsilon_plus")
        assert analyzer.rules[0] == ZPlusRule()

    def test_unknown_registry_name(self, simple_cnn):
        with pytest.raises(KeyError):
            LRP(simple_cnn, "no_such_composite")

    def test_rejects_non_module(self):
        with pytest.raises(TypeError, match="torch.nn.Module"):
            LRP(lambda x: x)

    def test_rejects_softmax(self, simple_classifier):
        model = nn.Sequential(simple_classifier, nn.Softmax(dim=1))
        with pytest.raises(ConfigurationError, match="strip_softmax"):
            LRP(model)

    def test_incompatible_composite(self, simple_classifier):
        with pytest.raises(ConfigurationError, match="incompatible"):
            LRP(simple_classifier, Composite(GlobalMap(AlphaBetaRule())))

    def test_skip_checks(self, simple_classifier, sample_data):
        """Without checks, a misconfiguration surfaces during analysis."""
        analyzer = LRP(simple_classifier, Composite(GlobalMap(AlphaBetaRule())), skip_checks=True)
        with pytest.raises(ConfigurationError, match="ReLU"):
            analyzer.analyze(sample_data)

    def test_puts_model_in_eval_mode(self):
        model = nn.Sequential(nn.Linear(4, 4), nn.Dropout(0.5), nn.Linear(4, 2))
        model.train()
        LRP(model)
        assert not model.training

    def test_canonization_copies(self, cnn_with_batchnorm):
        analyzer = LRP(cnn_with_batchnorm)
        assert isinstance(cnn_with_batchnorm[1], nn.BatchNorm2d)
        assert not any(isinstance(m, nn.BatchNorm2d) for m in analyzer.model.modules())


# =============================================================================
# Analysis
# =============================================================================

class TestLRPAnalyze:
    """Tests for analyze()."""

    def test_explanation_fields(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data)

        assert explanation.method == "LRP"
        assert explanation.attribution.shape == sample_data.shape
        assert explanation.output.shape == (5, 3)
        assert torch.isfinite(explanation.attribution).all()
        assert explanation.heatmap is None

    def test_argmax_selection(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data)
        assert torch.equal(explanation.output_selection, explanation.output.argmax(dim=1))
        assert torch.allclose(explanation.score, explanation.output.max(dim=1).values)

    def test_int_selection(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data, output_selection=2)
        assert explanation.output_selection.tolist() == [2] * 5

    def test_per_sample_selection(self, simple_classifier, sample_data):
        selection = [0, 1, 2, 0, 1]
        explanation = LRP(simple_classifier).analyze(sample_data, output_selection=selection)
        assert explanation.output_selection.tolist() == selection

    def test_selection_out_of_range(self, simple_classifier, sample_data):
        with pytest.raises(ConfigurationError, match="out of range"):
            LRP(simple_classifier).analyze(sample_data, output_selection=3)

    def test_selection_wrong_length(self, simple_classifier, sample_data):
        with pytest.raises(ConfigurationError, match="entries"):
            LRP(simple_classifier).analyze(sample_data, output_selection=[0, 1])

    def test_input_without_batch_dimension(self, simple_classifier, sample_data):
        analyzer = LRP(simple_classifier)
        with pytest.raises(ShapeMismatchError, match=r"\(4,\) has no batch dimension"):
            analyzer.analyze(sample_data[0])
        assert analyzer.analyze(sample_data[0].unsqueeze(0)).attribution.shape == (1, 4)

    def test_output_without_batch_dimension(self, simple_classifier, sample_data):
        model = nn.Sequential(simple_classifier, nn.Flatten(0))
        with pytest.raises(ShapeMismatchError, match="batch dimension"):
            LRP(model).analyze(sample_data)

    def test_call_is_analyze(self, simple_classifier, sample_data):
        analyzer = LRP(simple_classifier)
        assert torch.equal(analyzer(sample_data, 1).attribution, analyzer.analyze(sample_data, 1).attribution)

    def test_numpy_input(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data.numpy())
        assert isinstance(explanation.attribution, torch.Tensor)

    def test_deterministic(self, simple_classifier, sample_data):
        analyzer = LRP(simple_classifier, EpsilonRule())
        first = analyzer.analyze(sample_data).attribution
        second = analyzer.analyze(sample_data).attribution
        assert torch.equal(first, second)

    def test_batch_consistent_with_individual(self, simple_classifier, sample_data):
        analyzer = LRP(simple_classifier, epsilon_plus())
        batch = analyzer.analyze(sample_data, output_selection=1).attribution
        for i in range(sample_data.shape[0]):
            single = analyzer.analyze(sample_data[i:i + 1], output_selection=1).attribution
            assert torch.allclose(batch[i:i + 1], single, atol=1e-6)

    def test_analyze_outputs(self, simple_classifier, sample_data):
        """Several selections share one forward pass and match separate calls."""
        analyzer = LRP(simple_classifier)
        explanations = analyzer.analyze_outputs(sample_data, [0, 1, 2])

        assert len(explanations) == 3
        for selection, explanation in enumerate(explanations):
            expected = analyzer.analyze(sample_data, output_selection=selection)
            assert torch.allclose(explanation.attribution, expected.attribution)


# =============================================================================
# Conservation
# =============================================================================

class TestLRPConservation:
    """Bias-free models with conservative rules conserve relevance."""

    def test_normalized_output_relevance(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data)

        assert torch.equal(explanation.relevance_total, torch.ones(5))
        assert torch.allclose(explanation.attribution_sum(), torch.ones(5), atol=1e-3)
        assert explanation.convergence_delta().max() < 1e-3

    def test_unnormalized_output_relevance(self, simple_classifier, sample_data):
        analyzer = LRP(simple_classifier, normalize_output_relevance=False)
        explanation = analyzer.analyze(sample_data)

        assert torch.allclose(explanation.relevance_total, explanation.score)
        assert torch.allclose(explanation.attribution_sum(), explanation.score, atol=1e-3)

    def test_normalization_is_a_rescaling(self, simple_classifier, sample_data):
        normalized = LRP(simple_classifier).analyze(sample_data)
        raw = LRP(simple_classifier, normalize_output_relevance=False).analyze(sample_data)
        expected = normalized.attribution * raw.score.unsqueeze(1)
        assert torch.allclose(raw.attribution, expected, atol=1e-5)

    def test_layerwise_relevances(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier).analyze(sample_data, layerwise_relevances=True)
        layerwise = explanation.extras["layerwise_relevances"]

        assert list(layerwise) == ["0", "1", "2", "3", "4", "input"]
        for name, relevance in layerwise.items():
            total = relevance.reshape(5, -1).sum(dim=1)
            assert torch.allclose(total, torch.ones(5), atol=1e-3), name

    def test_gamma_close_to_conservation(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier, GammaRule()).analyze(sample_data)
        assert explanation.convergence_delta().max() < 1e-3


# =============================================================================
# Architectures
# =============================================================================

class TestLRPArchitectures:
    """Convolutional, normalized and branched models."""

    @pytest.mark.parametrize("name", sorted(PRESETS))
    def test_cnn_presets(self, simple_cnn, image_data, name):
        explanation = LRP(simple_cnn, name).analyze(image_data)

        assert explanation.attribution.shape == image_data.shape
        assert explanation.heatmap.shape == (2, 8, 8)
        assert torch.isfinite(explanation.attribution).all()

    def test_different_rules_differ(self, simple_cnn, image_data):
        zero = LRP(simple_cnn).analyze(image_data, output_selection=0).attribution
        plus = LRP(simple_cnn, epsilon_plus()).analyze(image_data, output_selection=0).attribution
        assert not torch.allclose(zero, plus)

    def test_batchnorm_model(self, cnn_with_batchnorm, image_data):
        canonized = LRP(cnn_with_batchnorm).analyze(image_data)
        raw = LRP(cnn_with_batchnorm, canonize=False).analyze(image_data)

        assert torch.isfinite(canonized.attribution).all()
        assert torch.isfinite(raw.attribution).all()
        assert torch.allclose(canonized.output, raw.output, atol=1e-5)

    def test_name_map_after_canonization(self, sample_data):
        torch.manual_seed(42)
        model = nn.Sequential(OrderedDict(
            features=nn.Sequential(nn.Linear(4, 8), nn.BatchNorm1d(8), nn.ReLU()),
            classifier=nn.Linear(8, 3),
        ))
        composite = Composite(NameMap({"features.*": EpsilonRule(0.25), "classifier": EpsilonRule(0.5)}))

        analyzer = LRP(model, composite)

        assert analyzer.rules[analyzer.graph.find("features.0").index] == EpsilonRule(0.25)
        assert analyzer.rules[analyzer.graph.find("classifier").index] == EpsilonRule(0.5)
        layerwise = analyzer.analyze(sample_data, layerwise_relevances=True).extras["layerwise_relevances"]
        assert list(layerwise) == ["features.0", "features.2", "classifier", "input"]

    def test_name_map_on_fused_batchnorm(self):
        model = nn.Sequential(nn.Linear(4, 8), nn.BatchNorm1d(8), nn.ReLU(), nn.Linear(8, 3))
        with pytest.raises(ConfigurationError, match="'1' matches no layer"):
            LRP(model, Composite(NameMap({"1": EpsilonRule()})))

    def test_parallel_analytic(self):
        """Hand-computed relevance through an identity and a dense branch."""
        dense = nn.Linear(2, 2).double()
        with torch.no_grad():
            dense.weight.copy_(torch.tensor([[3.0, 4.0], [5.0, 6.0]]))
            dense.bias.copy_(torch.tensor([7.0, 8.0]))
        composite = Composite(GlobalTypeMap({nn.Identity: PassRule(), nn.Linear: ZeroRule()}))
        x = torch.tensor([[1.0, 2.0]], dtype=torch.float64)

        parallel = LRP(nn.Sequential(Parallel(nn.Identity(), nn.Sequential(dense, nn.ReLU()))), composite)
        skip = LRP(nn.Sequential(SkipConnection(nn.Sequential(dense, nn.ReLU()))), composite)

        expected = torch.tensor([[4 / 19, 8 / 19]], dtype=torch.float64)
        assert torch.allclose(parallel.analyze(x, 0).attribution, expected)
        assert torch.allclose(skip.analyze(x, 0).attribution, expected)

        expected = torch.tensor([[5 / 27, 14 / 27]], dtype=torch.float64)
        assert torch.allclose(parallel.analyze(x, 1).attribution, expected)
        assert torch.allclose(skip.analyze(x, 1).attribution, expected)

    def test_residual_cnn(self, image_data):
        torch.manual_seed(42)
        model = nn.Sequential(
            nn.Conv2d(1, 4, 3, padding=1),
            nn.ReLU(),
            SkipConnection(nn.Sequential(nn.Conv2d(4, 4, 3, padding=1), nn.ReLU())),
            Parallel(nn.Conv2d(4, 2, 1), nn.Conv2d(4, 2, 3, padding=1), connection="cat"),
            nn.AdaptiveMaxPool2d(1),
            nn.Flatten(),
            nn.Linear(4, 3),
        )
        explanation = LRP(model, "epsilon_gamma_box").analyze(image_data)

        assert explanation.attribution.shape == image_data.shape
        assert torch.isfinite(explanation.attribution).all()

    @pytest.mark.parametrize("activation", [nn.LeakyReLU(), nn.ELU(), nn.Tanh(), nn.GELU()])
    def test_activations(self, activation, sample_data):
        torch.manual_seed(42)
        model = nn.Sequential(nn.Linear(4, 8), activation, nn.Linear(8, 2))
        explanation = LRP(model, EpsilonRule()).analyze(sample_data)
        assert torch.isfinite(explanation.attribution).all()

    def test_layer_norm_model(self, sample_data):
        torch.manual_seed(42)
        model = nn.Sequential(nn.Linear(4, 8), nn.LayerNorm(8), nn.ReLU(), nn.Linear(8, 2))
        explanation = LRP(model).analyze(sample_data)
        assert torch.isfinite(explanation.attribution).all()

    def test_float64_model(self, simple_classifier, sample_data):
        explanation = LRP(simple_classifier.double()).analyze(sample_data.double())
        assert explanation.attribution.dtype == torch.float64


def test_to_dict_round_trip(simple_classifier, sample_data):
    data = LRP(simple_classifier).analyze(sample_data).to_dict()
    assert isinstance(data["attribution"], np.ndarray)
    assert data["method"] == "LRP"
