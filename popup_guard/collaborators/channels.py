"""
Default channel implementations.

Used when the host wires no UI: decisions are never presented (so every
pending candidate ends in a timeout) and notifications go to the log.
"""

import logging
from typing import Any, Dict, Optional

from ..core.models import PatternSuggestion, PopupCandidate, UserDecision
from .base import NotificationChannel, UserDecisionChannel

logger = logging.getLogger(__name__)


class NullDecisionChannel(UserDecisionChannel):
    """Decision channel that only logs."""

    def present(self, candidate: PopupCandidate, suggestion: Optional[PatternSuggestion]) -> None:
        logger.debug(
            f"No decision UI wired; candidate {candidate.popup_id} will time out "
            f"(suggestion: {suggestion.suggestion.value if suggestion else None})"
        )

    def notify_result(self, popup_id: str, decision: UserDecision) -> None:
        logger.debug(f"Decision for {popup_id}: {decision.value}")

    def notify_timeout(self, popup_id: str) -> None:
        logger.debug(f"Decision timed out for {popup_id}")


class LoggingNotificationChannel(NotificationChannel):
    """Writes detection events to the log."""

    def notify(self, event: Dict[str, Any]) -> None:
        logger.info(
            f"Popup {event.get('popupId')} on {event.get('domain') or '?'}: "
            f"{event.get('status')} (confidence {event.get('confidence', 0.0):.2f})"
        )
