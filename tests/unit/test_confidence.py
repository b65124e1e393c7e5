"""
Unit tests for the confidence scorer.
"""

import pytest

from popup_guard.core.confidence import ConfidenceScorer
from popup_guard.core.models import Characteristics, PlacementCues, Tier


class TestScoring:
    """Weighted rule evaluation."""

    def test_all_signals_capped_at_one(self):
        """Every rule firing saturates at 1.0."""
        scorer = ConfidenceScorer()
        result = scorer.score(
            Characteristics(has_close_button=True, z_index=99999),
            PlacementCues(position="fixed", has_shadow=True, near_center=True),
        )

        assert result.value == 1.0
        assert result.tier is Tier.HIGH
        assert set(result.signals) == {
            "fixed_position", "very_high_z_index", "shadow", "near_center", "close_button",
        }

    def test_high_tier_boundary(self):
        """80 points is exactly the high threshold."""
        result = ConfidenceScorer().score(
            Characteristics(has_close_button=True),
            PlacementCues(position="fixed", has_shadow=True, near_center=True),
        )

        assert result.value == pytest.approx(0.8)
        assert result.tier is Tier.HIGH

    def test_medium_tier(self):
        """Fixed with a very high z-index is medium."""
        result = ConfidenceScorer().score(Characteristics(z_index=5000), PlacementCues(position="fixed"))

        assert result.value == pytest.approx(0.5)
        assert result.tier is Tier.MEDIUM

    def test_low_tier(self):
        """Absolute position with a moderate z-index is low."""
        result = ConfidenceScorer().score(Characteristics(z_index=500), PlacementCues(position="absolute"))

        assert result.value == pytest.approx(0.25)
        assert result.tier is Tier.LOW
        assert result.signals == ("absolute_position", "high_z_index")

    def test_missing_cues_are_neutral(self):
        """Without cues only characteristic rules apply."""
        result = ConfidenceScorer().score(Characteristics(has_close_button=True))

        assert result.value == pytest.approx(0.25)

    def test_deterministic(self):
        """Same input, same output."""
        scorer = ConfidenceScorer()
        c = Characteristics(has_close_button=True, z_index=150)
        cues = PlacementCues(position="fixed")

        assert scorer.score(c, cues) == scorer.score(c, cues)


class TestConfiguration:
    """Custom weights and thresholds."""

    def test_custom_weights(self):
        """Configured weights override the defaults."""
        scorer = ConfidenceScorer({"weights": {"close_button": 60}})

        assert scorer.score(Characteristics(has_close_button=True)).value == pytest.approx(0.6)
        assert scorer.weights["fixed_position"] == 30

    def test_custom_thresholds(self):
        """Tier boundaries follow configuration."""
        scorer = ConfidenceScorer({"high_threshold": 0.9, "medium_threshold": 0.2})

        assert scorer.tier_for(0.85) is Tier.MEDIUM
        assert scorer.tier_for(0.25) is Tier.MEDIUM
        assert scorer.tier_for(0.1) is Tier.LOW

    def test_inverted_thresholds_clamped(self):
        """medium above high is clamped to high."""
        scorer = ConfidenceScorer({"high_threshold": 0.6, "medium_threshold": 0.7})

        assert scorer.medium_threshold == 0.6

    def test_passes_threshold(self):
        """passes_threshold compares against the tier's lower bound."""
        scorer = ConfidenceScorer()

        assert scorer.passes_threshold(0.5) is True
        assert scorer.passes_threshold(0.49) is False
        assert scorer.passes_threshold(0.79, Tier.HIGH) is False
        assert scorer.passes_threshold(0.0, Tier.LOW) is True
