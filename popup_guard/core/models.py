"""
Data model shared by the popup engine components.

Wire names (used for persistence and the message API) are camelCase, as the
browser extension stores them; Python attributes are snake_case.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import InvalidRecordError


class UserDecision(Enum):
    """Outcome of a popup candidate."""
    CLOSE = "close"
    KEEP = "keep"
    TIMEOUT = "timeout"
    DISMISS = "dismiss"


# Decisions the learning engine is allowed to learn from
LEARNABLE_DECISIONS = (UserDecision.CLOSE, UserDecision.KEEP)

# Decisions a user (or the UI channel) may submit
USER_SUBMITTABLE_DECISIONS = (UserDecision.CLOSE, UserDecision.KEEP, UserDecision.DISMISS)


class DecisionStatus(Enum):
    """Lifecycle of a pending decision."""
    AWAITING = "awaiting"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class Tier(Enum):
    """Classification tier derived from a confidence score."""
    HIGH = "high"      # Eligible for auto-suggestion
    MEDIUM = "medium"  # Ask the user
    LOW = "low"        # No action


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return 0


def _clamp_unit(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class Dimensions:
    """Rendered size of an element, in CSS pixels."""
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class Characteristics:
    """
    Normalized feature vector of a popup candidate.

    The defaults are the conservative "nothing detected" vector returned when
    an element cannot be inspected.
    """
    has_close_button: bool = False
    contains_ads: bool = False
    has_external_links: bool = False
    is_modal: bool = False
    z_index: int = 0
    dimensions: Dimensions = field(default_factory=Dimensions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasCloseButton": self.has_close_button,
            "containsAds": self.contains_ads,
            "hasExternalLinks": self.has_external_links,
            "isModal": self.is_modal,
            "zIndex": self.z_index,
            "dimensions": {
                "width": self.dimensions.width,
                "height": self.dimensions.height,
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Characteristics":
        """
        Build characteristics from their wire form.

        Missing fields take their defaults; present fields are coerced.

        Raises:
            InvalidRecordError: if data is not a mapping
        """
        if not isinstance(data, Mapping):
            raise InvalidRecordError(f"characteristics must be a mapping, got {type(data).__name__}")

        dims = data.get("dimensions") or {}
        if not isinstance(dims, Mapping):
            dims = {}

        return cls(
            has_close_button=_as_bool(data.get("hasCloseButton", False)),
            contains_ads=_as_bool(data.get("containsAds", False)),
            has_external_links=_as_bool(data.get("hasExternalLinks", False)),
            is_modal=_as_bool(data.get("isModal", False)),
            z_index=_as_int(data.get("zIndex", 0)),
            dimensions=Dimensions(
                width=max(0, _as_int(dims.get("width", 0))),
                height=max(0, _as_int(dims.get("height", 0))),
            ),
        )


@dataclass(frozen=True)
class PlacementCues:
    """Layout signals used by the scorer but not by pattern learning."""
    position: str = "static"
    has_shadow: bool = False
    near_center: bool = False


@dataclass(frozen=True)
class ConfidenceScore:
    """Result of scoring a candidate."""
    value: float
    tier: Tier
    signals: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PatternSuggestion:
    """Advisory decision inferred from a learned pattern."""
    suggestion: UserDecision
    confidence: float
    similarity: float
    pattern_id: str
    occurrences: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestion": self.suggestion.value,
            "confidence": round(self.confidence, 4),
            "similarity": round(self.similarity, 4),
            "patternId": self.pattern_id,
            "occurrences": self.occurrences,
        }


@dataclass(frozen=True)
class PopupCandidate:
    """A scored candidate handed to the decision coordinator."""
    popup_id: str
    url: str
    domain: str
    characteristics: Characteristics
    score: ConfidenceScore
    cues: PlacementCues = field(default_factory=PlacementCues)
    detected_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PopupRecord:
    """Append-only history entry created when a candidate is resolved."""
    id: str
    url: str
    domain: str
    timestamp: float
    characteristics: Characteristics
    user_decision: UserDecision
    confidence: float
    response_time: float = 0.0
    auto_resolved: bool = False

    def __post_init__(self):
        # Frozen dataclass: bypass __setattr__ to normalize the score
        object.__setattr__(self, "confidence", _clamp_unit(self.confidence))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "domain": self.domain,
            "timestamp": self.timestamp,
            "characteristics": self.characteristics.to_dict(),
            "userDecision": self.user_decision.value,
            "confidence": self.confidence,
            "responseTime": self.response_time,
            "autoResolved": self.auto_resolved,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PopupRecord":
        """
        Raises:
            InvalidRecordError: if required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise InvalidRecordError("popup record must be a mapping")
        try:
            return cls(
                id=str(data["id"]),
                url=str(data.get("url", "")),
                domain=str(data.get("domain", "")),
                timestamp=float(data["timestamp"]),
                characteristics=Characteristics.from_dict(data.get("characteristics", {})),
                user_decision=UserDecision(data["userDecision"]),
                confidence=data.get("confidence", 0.0),
                response_time=float(data.get("responseTime", 0.0)),
                auto_resolved=bool(data.get("autoResolved", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"invalid popup record: {e}") from e


@dataclass
class LearningPattern:
    """A learned (characteristics, decision) association."""
    pattern_id: str
    characteristics: Characteristics
    user_decision: UserDecision
    confidence: float
    occurrences: int = 1
    last_seen: float = field(default_factory=time.time)
    domain: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patternId": self.pattern_id,
            "characteristics": self.characteristics.to_dict(),
            "userDecision": self.user_decision.value,
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "lastSeen": self.last_seen,
            "domain": self.domain,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LearningPattern":
        """
        Raises:
            InvalidRecordError: if required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise InvalidRecordError("learning pattern must be a mapping")
        try:
            decision = UserDecision(data["userDecision"])
            if decision not in LEARNABLE_DECISIONS:
                raise ValueError(f"pattern decision must be close/keep, got {decision.value}")
            return cls(
                pattern_id=str(data["patternId"]),
                characteristics=Characteristics.from_dict(data.get("characteristics", {})),
                user_decision=decision,
                confidence=_clamp_unit(data.get("confidence", 0.0)),
                occurrences=max(1, int(data.get("occurrences", 1))),
                last_seen=float(data.get("lastSeen", 0.0)),
                domain=str(data.get("domain", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"invalid learning pattern: {e}") from e


@dataclass
class PendingDecision:
    """In-flight decision for one popup candidate."""
    popup_id: str
    popup_data: PopupCandidate
    created_at: float
    timeout_handle: Any = None  # ScheduledTask
    status: DecisionStatus = DecisionStatus.AWAITING
    suggestion: Optional[PatternSuggestion] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "popupId": self.popup_id,
            "url": self.popup_data.url,
            "domain": self.popup_data.domain,
            "createdAt": self.created_at,
            "status": self.status.value,
            "confidence": self.popup_data.score.value,
            "tier": self.popup_data.score.tier.value,
            "characteristics": self.popup_data.characteristics.to_dict(),
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
        }

    @staticmethod
    def candidate_from_dict(data: Mapping[str, Any]) -> PopupCandidate:
        """
        Rebuild the candidate of a stored pending decision.

        Raises:
            InvalidRecordError: if required fields are missing or invalid
        """
        if not isinstance(data, Mapping):
            raise InvalidRecordError("pending decision must be a mapping")
        try:
            return PopupCandidate(
                popup_id=str(data["popupId"]),
                url=str(data.get("url", "")),
                domain=str(data.get("domain", "")),
                characteristics=Characteristics.from_dict(data.get("characteristics", {})),
                score=ConfidenceScore(
                    value=_clamp_unit(data.get("confidence", 0.0)),
                    tier=Tier(data.get("tier", Tier.MEDIUM.value)),
                ),
                detected_at=float(data["createdAt"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"invalid pending decision: {e}") from e


@dataclass
class ThrottleState:
    """Rolling-window counters of the throttle governor."""
    window_start: float
    count_in_window: int = 0
    limit: int = 30
    suspended: bool = False
