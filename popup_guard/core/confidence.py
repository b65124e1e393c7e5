"""
Confidence scoring for popup candidates.

Deterministic weighted-additive rules over the candidate's characteristics
and placement cues. The sum (capped at 100) is normalized to [0, 1] and
mapped to a tier:
- high (>= 0.8): eligible for a pattern-based suggestion
- medium (>= 0.5): ask the user
- low: no action
"""

import logging
from typing import Dict, List, Optional

from .models import Characteristics, ConfidenceScore, PlacementCues, Tier

logger = logging.getLogger(__name__)


class ConfidenceScorer:
    """
    Weighted rule scorer.

    Usage:
        scorer = ConfidenceScorer(config["scoring"])
        result = scorer.score(characteristics, cues)
        if result.tier is Tier.LOW:
            return
    """

    DEFAULT_WEIGHTS = {
        "fixed_position": 30,
        "absolute_position": 15,
        "very_high_z_index": 20,  # z-index > 1000
        "high_z_index": 10,       # z-index > 100
        "shadow": 15,
        "near_center": 10,
        "close_button": 25,
    }

    VERY_HIGH_Z_INDEX = 1000
    HIGH_Z_INDEX = 100
    MAX_SCORE = 100

    DEFAULT_HIGH_THRESHOLD = 0.8
    DEFAULT_MEDIUM_THRESHOLD = 0.5

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize the scorer.

        Args:
            config: Configuration with:
                - weights: Dict of rule name → points (merged over DEFAULT_WEIGHTS)
                - high_threshold: Lower bound of the high tier (0.8)
                - medium_threshold: Lower bound of the medium tier (0.5)
        """
        config = config or {}

        self.weights = {**self.DEFAULT_WEIGHTS}
        self.weights.update(config.get("weights", {}))
        self.high_threshold = config.get("high_threshold", self.DEFAULT_HIGH_THRESHOLD)
        self.medium_threshold = config.get("medium_threshold", self.DEFAULT_MEDIUM_THRESHOLD)

        if self.medium_threshold > self.high_threshold:
            logger.warning(
                f"medium_threshold {self.medium_threshold} above high_threshold "
                f"{self.high_threshold}; clamping"
            )
            self.medium_threshold = self.high_threshold

    def score(
        self, characteristics: Characteristics, cues: Optional[PlacementCues] = None
    ) -> ConfidenceScore:
        """
        Score a candidate.

        Args:
            characteristics: Normalized element features
            cues: Layout signals (neutral when omitted)

        Returns:
            ConfidenceScore with value in [0, 1], tier and fired rule names
        """
        cues = cues or PlacementCues()
        signals: List[str] = []

        if cues.position == "fixed":
            signals.append("fixed_position")
        elif cues.position == "absolute":
            signals.append("absolute_position")

        if characteristics.z_index > self.VERY_HIGH_Z_INDEX:
            signals.append("very_high_z_index")
        elif characteristics.z_index > self.HIGH_Z_INDEX:
            signals.append("high_z_index")

        if cues.has_shadow:
            signals.append("shadow")
        if cues.near_center:
            signals.append("near_center")
        if characteristics.has_close_button:
            signals.append("close_button")

        total = sum(self.weights.get(name, 0) for name in signals)
        total = max(0, min(self.MAX_SCORE, total))
        value = total / self.MAX_SCORE

        return ConfidenceScore(value=value, tier=self.tier_for(value), signals=tuple(signals))

    def tier_for(self, value: float) -> Tier:
        """Map a normalized score to its tier."""
        if value >= self.high_threshold:
            return Tier.HIGH
        if value >= self.medium_threshold:
            return Tier.MEDIUM
        return Tier.LOW

    def passes_threshold(self, value: float, tier: Tier = Tier.MEDIUM) -> bool:
        """
        Check if a score reaches the lower bound of a tier.

        Args:
            value: Normalized score
            tier: Tier to test against (medium by default)
        """
        if tier is Tier.HIGH:
            threshold = self.high_threshold
        elif tier is Tier.MEDIUM:
            threshold = self.medium_threshold
        else:
            return True

        passes = value >= threshold
        if not passes:
            logger.debug(f"Score {value:.2f} below {tier.value} threshold {threshold:.2f}")
        return passes
