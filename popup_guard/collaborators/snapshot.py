"""
Element accessor backed by a serialized snapshot.

Content scripts cannot hand live DOM nodes to the engine; they serialize the
candidate instead:

    {
        "tag": "div",
        "attributes": {"class": "modal", "role": "dialog"},
        "text": "Subscribe!",
        "style": {"position": "fixed", "zIndex": "9999", "boxShadow": "none"},
        "rect": {"x": 100, "y": 100, "width": 400, "height": 300},
        "viewport": {"width": 1280, "height": 800},
        "children": [...]
    }

Children inherit the root's viewport when they do not carry their own.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .base import ElementAccessor


class SnapshotElement(ElementAccessor):
    """ElementAccessor over a snapshot dict."""

    def __init__(self, data: Mapping[str, Any], viewport: Optional[Mapping[str, float]] = None):
        if not isinstance(data, Mapping):
            raise TypeError("snapshot must be a mapping")
        self._data = data
        self._viewport = data.get("viewport") or viewport or {}
        self._children: Optional[List["SnapshotElement"]] = None

    def tag_name(self) -> str:
        return str(self._data.get("tag", "div")).lower()

    def get_attribute(self, name: str) -> Optional[str]:
        value = (self._data.get("attributes") or {}).get(name)
        return None if value is None else str(value)

    def text_content(self) -> str:
        return str(self._data.get("text", "") or "")

    def computed_style(self) -> Mapping[str, Any]:
        return self._data.get("style") or {}

    def bounding_rect(self) -> Mapping[str, float]:
        return self._data.get("rect") or {}

    def viewport(self) -> Mapping[str, float]:
        return self._viewport

    def children(self) -> Sequence["SnapshotElement"]:
        if self._children is None:
            self._children = [
                SnapshotElement(child, self._viewport)
                for child in (self._data.get("children") or [])
                if isinstance(child, Mapping)
            ]
        return self._children

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)
