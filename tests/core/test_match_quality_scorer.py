"""
Unit tests for match-quality scoring.
"""

import pytest

from core.identity import IdentityNormalizer, IdentityRecord
from core.scoring import FIELD_WEIGHTS, MatchQualityScorer, score_tier, to_external_scale


class TestMatchQualityScorer:

    @pytest.fixture
    def scorer(self):
        return MatchQualityScorer(target_scale=8)

    @pytest.fixture
    def normalizer(self):
        return IdentityNormalizer()

    def test_email_only_scores_30(self, scorer, normalizer):
        identity = normalizer.normalize({"em": "A@Example.com"}).identity
        result = scorer.score(identity)
        assert result.score == 30
        assert result.external_scale == 3
        assert result.fields_present == ["email"]

    def test_email_and_phone_score_55(self, scorer, normalizer):
        identity = normalizer.normalize({"em": "a@example.com", "ph": "+1 555 123 4567"}).identity
        assert scorer.quick_score(identity) == 55

    def test_empty_identity(self, scorer):
        result = scorer.score(IdentityRecord())
        assert result.score == 0
        assert result.external_scale == 1
        assert result.tier == "poor"
        assert not result.meets_target

    def test_score_clamped_to_100(self, scorer):
        identity = IdentityRecord(**{field: "x" for field in FIELD_WEIGHTS})
        result = scorer.score(identity)
        assert result.score == 100
        assert result.external_scale == 10
        assert result.tier == "excellent"
        assert result.meets_target
        assert result.fields_missing == []

    def test_external_scale_boundaries(self):
        assert to_external_scale(0) == 1
        assert to_external_scale(10) == 1
        assert to_external_scale(11) == 2
        assert to_external_scale(71) == 8
        assert to_external_scale(80) == 8
        assert to_external_scale(100) == 10

    def test_tiers(self):
        assert score_tier(20) == "poor"
        assert score_tier(21) == "fair"
        assert score_tier(41) == "good"
        assert score_tier(61) == "great"
        assert score_tier(81) == "excellent"

    def test_meets_target_at_scale_8(self, scorer):
        assert not scorer.meets_target(70)
        assert scorer.meets_target(71)

    def test_recommendations_for_sparse_identity(self, scorer):
        result = scorer.score(IdentityRecord(client_ip="203.0.113.7"))
        assert any("email (em) or phone (ph)" in r for r in result.recommendations)
        assert any("_fbp" in r for r in result.recommendations)

    def test_deterministic(self, scorer, normalizer):
        identity = normalizer.normalize({"em": "a@example.com", "fn": "Ann"}).identity
        assert scorer.score(identity) == scorer.score(identity)
