"""
Pattern learning from user decisions.

Every close/keep decision is matched against the stored patterns by
characteristic similarity:
- no match: a new pattern is created with a moderate prior (0.6)
- matching decision: confidence is reinforced toward (never reaching) 1
- conflicting decision: confidence decays; the stored decision is kept and
  the pattern is eventually dropped by cleanup

Timeouts and dismissals are history-only and never touch the patterns.
"""

import logging
import math
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import InvalidRecordError
from .models import (
    LEARNABLE_DECISIONS,
    Characteristics,
    Dimensions,
    LearningPattern,
    PatternSuggestion,
    PopupRecord,
)
from .storage import NS_LEARNING_PATTERNS, GuardedStore

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHTS = {
    "has_close_button": 0.15,
    "contains_ads": 0.25,
    "has_external_links": 0.20,
    "is_modal": 0.15,
    "z_index": 0.10,
    "dimensions": 0.15,
}

# z-index values this close count as identical
Z_INDEX_TOLERANCE = 100
# Relative size difference that still counts as identical
DIMENSION_TOLERANCE = 0.05

INITIAL_CONFIDENCE = 0.6
CONFIDENCE_CEILING = 0.99
REINFORCE_RATE = 0.25
DECAY_FACTOR = 0.65
HIGH_CONFIDENCE = 0.8

SECONDS_PER_DAY = 86400


def _z_index_similarity(a: int, b: int) -> float:
    diff = abs(a - b)
    if diff <= Z_INDEX_TOLERANCE:
        return 1.0
    scale = max(abs(a), abs(b))
    return max(0.0, min(1.0, 1.0 - diff / scale))


def _axis_similarity(a: int, b: int) -> float:
    largest = max(a, b)
    if largest <= 0:
        return 1.0
    relative = abs(a - b) / largest
    if relative <= DIMENSION_TOLERANCE:
        return 1.0
    return max(0.0, 1.0 - relative)


def calculate_similarity(a: Characteristics, b: Characteristics) -> float:
    """
    Weighted similarity of two characteristic vectors, in [0, 1].

    Symmetric, and 1.0 for identical vectors.
    """
    total = 0.0
    matched = 0.0

    for key in ("has_close_button", "contains_ads", "has_external_links", "is_modal"):
        weight = SIMILARITY_WEIGHTS[key]
        total += weight
        if getattr(a, key) == getattr(b, key):
            matched += weight

    weight = SIMILARITY_WEIGHTS["z_index"]
    total += weight
    matched += weight * _z_index_similarity(a.z_index, b.z_index)

    weight = SIMILARITY_WEIGHTS["dimensions"]
    total += weight
    width = _axis_similarity(a.dimensions.width, b.dimensions.width)
    height = _axis_similarity(a.dimensions.height, b.dimensions.height)
    if width == 1.0 and height == 1.0:
        matched += weight
    else:
        matched += weight * (width + height) / 2

    return min(1.0, matched / total) if total > 0 else 0.0


def _generate_pattern_id() -> str:
    return f"pattern_{uuid.uuid4().hex[:12]}"


class PatternStore:
    """
    Similarity-based store of learned decisions.

    Features:
    - Best-match lookup with confidence and recency tie-breaks
    - Reinforcement / decay of pattern confidence
    - Age and confidence based cleanup, bounded pattern count
    - Persistence to the 'learningPatterns' namespace

    Usage:
        patterns = PatternStore(config["learning"], store=guarded_store)

        suggestion = patterns.get_pattern_based_suggestion(characteristics, "example.com")
        ...
        patterns.update_learning_data(record)
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        store: Optional[GuardedStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the pattern store.

        Args:
            config: Configuration with:
                - learning_enabled: Learn from decisions (default: True)
                - suggestion_confidence_threshold: Minimum pattern confidence to suggest (0.8)
                - similarity_threshold: Minimum similarity to match (0.7)
                - pattern_decay_min_confidence: Cleanup floor (0.3)
                - pattern_max_age_days: Cleanup age limit (30)
                - max_patterns: Maximum number of patterns kept (100)
            store: Persistence, loaded at construction
            clock: Time source (seconds)
        """
        config = config or {}

        self.learning_enabled = config.get("learning_enabled", True)
        self.suggestion_threshold = config.get("suggestion_confidence_threshold", 0.8)
        self.similarity_threshold = config.get("similarity_threshold", 0.7)
        self.decay_floor = config.get("pattern_decay_min_confidence", 0.3)
        self.max_age = config.get("pattern_max_age_days", 30) * SECONDS_PER_DAY
        self.max_patterns = config.get("max_patterns", 100)

        self._store = store
        self._clock = clock
        self._patterns: List[LearningPattern] = []
        self._lock = threading.Lock()

        self._load_patterns()

    # --- matching ---

    def similarity(self, a: Characteristics, b: Characteristics) -> float:
        return calculate_similarity(a, b)

    def _best_match(
        self, patterns: List[LearningPattern], characteristics: Characteristics
    ) -> Optional[Tuple[LearningPattern, float]]:
        best: Optional[Tuple[LearningPattern, float]] = None
        best_key = None

        for pattern in patterns:
            sim = calculate_similarity(pattern.characteristics, characteristics)
            if sim < self.similarity_threshold:
                continue
            key = (sim, pattern.confidence, pattern.last_seen)
            if best_key is None or key > best_key:
                best, best_key = (pattern, sim), key

        return best

    def find_matching_pattern(
        self, patterns: List[LearningPattern], characteristics: Characteristics
    ) -> Optional[LearningPattern]:
        """
        Most similar pattern clearing the similarity threshold.

        Ties go to the higher confidence, then the most recently seen.
        """
        match = self._best_match(patterns, characteristics)
        return match[0] if match else None

    # --- lifecycle ---

    def create_new_pattern(self, record: PopupRecord) -> LearningPattern:
        """New pattern from a first qualifying decision."""
        return LearningPattern(
            pattern_id=_generate_pattern_id(),
            characteristics=record.characteristics,
            user_decision=record.user_decision,
            confidence=INITIAL_CONFIDENCE,
            occurrences=1,
            last_seen=record.timestamp,
            domain=record.domain,
        )

    def update_learning_data(self, record: Any) -> Optional[LearningPattern]:
        """
        Learn from a resolved popup.

        Args:
            record: PopupRecord (or its wire dict)

        Returns:
            The created or updated pattern; None when nothing was learned or
            the pattern was dropped by cleanup.
            Invalid input is logged and ignored.
        """
        try:
            record = self._coerce_record(record)
        except InvalidRecordError as e:
            logger.warning(f"Rejected learning record: {e}")
            return None

        if not self.learning_enabled:
            logger.debug("Learning disabled; skipping")
            return None

        if record.user_decision not in LEARNABLE_DECISIONS:
            logger.debug(f"Decision '{record.user_decision.value}' is not learnable; skipping")
            return None

        with self._lock:
            pattern = self.find_matching_pattern(self._patterns, record.characteristics)

            if pattern is None:
                pattern = self.create_new_pattern(record)
                self._patterns.append(pattern)
                logger.info(f"Created pattern {pattern.pattern_id} ({pattern.user_decision.value})")
            else:
                self._apply_decision(pattern, record)

            self._patterns = self._enforce_limit(self.cleanup_patterns(self._patterns))
            self._save_patterns()

            if all(p is not pattern for p in self._patterns):
                logger.info(f"Pattern {pattern.pattern_id} dropped after update")
                return None

        return pattern

    def _apply_decision(self, pattern: LearningPattern, record: PopupRecord) -> None:
        previous = pattern.confidence
        pattern.occurrences += 1
        pattern.last_seen = max(pattern.last_seen, record.timestamp)

        if pattern.user_decision == record.user_decision:
            if pattern.confidence < CONFIDENCE_CEILING:
                pattern.confidence += REINFORCE_RATE * (CONFIDENCE_CEILING - pattern.confidence)
        else:
            pattern.confidence *= DECAY_FACTOR

        pattern.characteristics = self._average_characteristics(
            pattern.characteristics, record.characteristics, pattern.occurrences
        )

        logger.info(
            f"Updated pattern {pattern.pattern_id}: confidence {previous:.2f} → "
            f"{pattern.confidence:.2f}, occurrences {pattern.occurrences}"
        )

    @staticmethod
    def _average_characteristics(
        existing: Characteristics, new: Characteristics, occurrences: int
    ) -> Characteristics:
        """Running average of the numeric features; booleans keep the stored value."""
        def avg(old: int, value: int) -> int:
            return int(round((old * (occurrences - 1) + value) / occurrences))

        return Characteristics(
            has_close_button=existing.has_close_button,
            contains_ads=existing.contains_ads,
            has_external_links=existing.has_external_links,
            is_modal=existing.is_modal,
            z_index=avg(existing.z_index, new.z_index),
            dimensions=Dimensions(
                width=avg(existing.dimensions.width, new.dimensions.width),
                height=avg(existing.dimensions.height, new.dimensions.height),
            ),
        )

    def cleanup_patterns(
        self, patterns: List[LearningPattern], now: Optional[float] = None
    ) -> List[LearningPattern]:
        """Drop patterns below the confidence floor or older than the max age."""
        now = self._clock() if now is None else now
        kept = [
            p for p in patterns
            if p.confidence >= self.decay_floor and (now - p.last_seen) <= self.max_age
        ]

        removed = len(patterns) - len(kept)
        if removed:
            logger.debug(f"Pattern cleanup: {len(patterns)} → {len(kept)}")
        return kept

    def prune(self, now: Optional[float] = None) -> int:
        """
        Apply cleanup to the stored patterns (periodic maintenance).

        Returns:
            Number of removed patterns
        """
        with self._lock:
            before = len(self._patterns)
            self._patterns = self.cleanup_patterns(self._patterns, now)
            removed = before - len(self._patterns)
            if removed:
                self._save_patterns()
        return removed

    def _retention_score(self, pattern: LearningPattern, now: float) -> float:
        freshness = max(0.0, 1.0 - (now - pattern.last_seen) / self.max_age)
        return pattern.confidence * math.log(pattern.occurrences + 1) * freshness

    def _enforce_limit(self, patterns: List[LearningPattern]) -> List[LearningPattern]:
        if len(patterns) <= self.max_patterns:
            return patterns
        now = self._clock()
        ranked = sorted(patterns, key=lambda p: self._retention_score(p, now), reverse=True)
        logger.debug(f"Pattern limit reached, dropping {len(patterns) - self.max_patterns}")
        return ranked[: self.max_patterns]

    # --- suggestions ---

    def get_pattern_based_suggestion(
        self, characteristics: Characteristics, domain: str = ""
    ) -> Optional[PatternSuggestion]:
        """
        Suggest the decision of the best matching pattern.

        Both the pattern confidence and the similarity must clear their
        thresholds; otherwise None.
        """
        if not self.learning_enabled:
            return None

        with self._lock:
            match = self._best_match(self._patterns, characteristics)

        if match is None:
            return None

        pattern, sim = match
        if pattern.confidence < self.suggestion_threshold or sim < self.similarity_threshold:
            return None

        logger.info(
            f"Pattern suggestion for {domain or 'unknown domain'}: {pattern.user_decision.value} "
            f"(confidence {pattern.confidence:.2f}, similarity {sim:.2f})"
        )
        return PatternSuggestion(
            suggestion=pattern.user_decision,
            confidence=pattern.confidence,
            similarity=sim,
            pattern_id=pattern.pattern_id,
            occurrences=pattern.occurrences,
        )

    # --- inspection ---

    @property
    def patterns(self) -> List[LearningPattern]:
        with self._lock:
            return list(self._patterns)

    def add_pattern(self, pattern: LearningPattern) -> None:
        """Insert a pattern as-is (imports, seeding)."""
        with self._lock:
            self._patterns.append(pattern)
            self._save_patterns()

    def get_learning_statistics(self) -> Dict[str, Any]:
        with self._lock:
            patterns = list(self._patterns)

        total = len(patterns)
        return {
            "total_patterns": total,
            "high_confidence_patterns": sum(1 for p in patterns if p.confidence >= HIGH_CONFIDENCE),
            "close_patterns": sum(1 for p in patterns if p.user_decision.value == "close"),
            "keep_patterns": sum(1 for p in patterns if p.user_decision.value == "keep"),
            "average_confidence": round(sum(p.confidence for p in patterns) / total, 3) if total else 0.0,
            "total_occurrences": sum(p.occurrences for p in patterns),
            "learning_enabled": self.learning_enabled,
        }

    def clear(self) -> None:
        """Forget every learned pattern."""
        with self._lock:
            self._patterns = []
            if self._store:
                self._store.remove(NS_LEARNING_PATTERNS, ["patterns"])
        logger.info("Learning patterns cleared")

    # --- persistence ---

    @staticmethod
    def _coerce_record(record: Any) -> PopupRecord:
        if isinstance(record, PopupRecord):
            return record
        if isinstance(record, dict):
            return PopupRecord.from_dict(record)
        raise InvalidRecordError(f"expected a popup record, got {type(record).__name__}")

    def _load_patterns(self) -> None:
        if not self._store:
            return
        raw = self._store.get(NS_LEARNING_PATTERNS, ["patterns"]).get("patterns", [])
        if not isinstance(raw, list):
            logger.warning("Stored learning patterns are not a list; ignoring")
            return

        for item in raw:
            try:
                self._patterns.append(LearningPattern.from_dict(item))
            except InvalidRecordError as e:
                logger.warning(f"Skipping stored pattern: {e}")

        loaded = len(self._patterns)
        self._patterns = self._enforce_limit(self.cleanup_patterns(self._patterns))
        if len(self._patterns) < loaded:
            logger.info(f"Dropped {loaded - len(self._patterns)} expired patterns on load")
            self._save_patterns()

        if self._patterns:
            logger.debug(f"Loaded {len(self._patterns)} learning patterns")

    def _save_patterns(self) -> None:
        if self._store:
            self._store.set(NS_LEARNING_PATTERNS, {"patterns": [p.to_dict() for p in self._patterns]})
