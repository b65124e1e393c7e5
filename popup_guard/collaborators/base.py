"""
Interfaces of the engine's external collaborators.

The engine never talks to the DOM, the UI or the browser storage directly:
it receives implementations of these abstract classes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Sequence

from ..core.models import PatternSuggestion, PopupCandidate, UserDecision


class ElementAccessor(ABC):
    """
    Read-only view of a candidate element.

    Every method may raise; callers must catch and fall back to defaults.
    """

    @abstractmethod
    def tag_name(self) -> str:
        """Lower-case tag name (e.g. 'div', 'iframe')."""
        pass

    @abstractmethod
    def get_attribute(self, name: str) -> Optional[str]:
        """Attribute value, or None when absent."""
        pass

    @abstractmethod
    def text_content(self) -> str:
        """Own text of the element (not including descendants)."""
        pass

    @abstractmethod
    def computed_style(self) -> Mapping[str, Any]:
        """Computed CSS properties, keyed by camelCase name (e.g. 'zIndex')."""
        pass

    @abstractmethod
    def bounding_rect(self) -> Mapping[str, float]:
        """Bounding client rect with 'x', 'y', 'width' and 'height'."""
        pass

    @abstractmethod
    def viewport(self) -> Mapping[str, float]:
        """Viewport size with 'width' and 'height'."""
        pass

    @abstractmethod
    def children(self) -> Sequence["ElementAccessor"]:
        """Direct child elements."""
        pass


class UserDecisionChannel(ABC):
    """
    Presents candidates to the user and reports back.

    The channel calls the engine back asynchronously with close/keep/dismiss;
    if it never does, the pending decision times out.
    """

    @abstractmethod
    def present(self, candidate: PopupCandidate, suggestion: Optional[PatternSuggestion]) -> None:
        pass

    @abstractmethod
    def notify_result(self, popup_id: str, decision: UserDecision) -> None:
        pass

    @abstractmethod
    def notify_timeout(self, popup_id: str) -> None:
        pass


class NotificationChannel(ABC):
    """Fire-and-forget display of detection results."""

    @abstractmethod
    def notify(self, event: Dict[str, Any]) -> None:
        pass
