"""
Feature extraction from candidate elements.

Turns an ElementAccessor into the normalized Characteristics vector used for
learning, plus the PlacementCues used for scoring. Extraction never raises:
any accessor failure yields the conservative default.
"""

import logging
import re
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from .errors import FeatureExtractionError
from .models import Characteristics, Dimensions, PlacementCues

if TYPE_CHECKING:
    from ..collaborators.base import ElementAccessor

logger = logging.getLogger(__name__)

# Upper bound on descendants inspected per candidate
MAX_NODES = 200

CLOSE_TEXTS = {"×", "✕", "✖", "x", "close", "閉じる", "dismiss", "no thanks", "skip"}
CLOSE_TOKENS = ("close", "dismiss")

AD_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(^|[\s_-])ad[s]?([_-]|$)",
        r"banner",
        r"advertisement",
        r"sponsored",
        r"doubleclick",
        r"adsystem",
        r"google.*ad",
    )
]
AD_HOSTS = ("doubleclick.net", "googlesyndication.com", "adservice.google.", "adnxs.com", "taboola.com", "outbrain.com")

MODAL_ROLES = ("dialog", "alertdialog")
MODAL_COVERAGE = 0.3
CENTER_TOLERANCE = 0.15


def _walk(root: "ElementAccessor", limit: int = MAX_NODES) -> Iterator["ElementAccessor"]:
    """Breadth-first walk over root and its descendants, bounded by limit."""
    queue = [root]
    seen = 0
    while queue and seen < limit:
        node = queue.pop(0)
        seen += 1
        yield node
        queue.extend(node.children())


def _parse_z_index(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _host(url: str) -> str:
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def _rect_number(rect: Mapping[str, Any], key: str) -> float:
    try:
        return float(rect.get(key, 0) or 0)
    except (TypeError, ValueError):
        return 0.0


class FeatureExtractor:
    """
    Reads a candidate element into Characteristics.

    Usage:
        extractor = FeatureExtractor()
        characteristics = extractor.extract(element, page_domain="example.com")
        characteristics, cues = extractor.analyze(element, page_domain="example.com")
    """

    def __init__(self, max_nodes: int = MAX_NODES):
        self.max_nodes = max_nodes

    def extract(self, element: "ElementAccessor", page_domain: str = "") -> Characteristics:
        """Characteristics of element; Characteristics() on any failure."""
        return self.analyze(element, page_domain)[0]

    def analyze(
        self, element: "ElementAccessor", page_domain: str = ""
    ) -> Tuple[Characteristics, PlacementCues]:
        """Characteristics and placement cues; neutral defaults on any failure."""
        try:
            return self._analyze(element, page_domain)
        except FeatureExtractionError as e:
            logger.debug(f"Feature extraction failed: {e}")
        except Exception as e:
            logger.debug(f"Element accessor raised during extraction: {e}")
        return Characteristics(), PlacementCues()

    def _analyze(self, element: "ElementAccessor", page_domain: str) -> Tuple[Characteristics, PlacementCues]:
        if element is None:
            raise FeatureExtractionError("no element")

        style = element.computed_style() or {}
        rect = element.bounding_rect() or {}
        viewport = element.viewport() or {}

        position = str(style.get("position", "static") or "static").strip().lower()
        width = max(0, int(round(_rect_number(rect, "width"))))
        height = max(0, int(round(_rect_number(rect, "height"))))

        nodes = list(_walk(element, self.max_nodes))

        characteristics = Characteristics(
            has_close_button=any(self._is_close_control(n) for n in nodes[1:]),
            contains_ads=any(self._looks_like_ad(n) for n in nodes),
            has_external_links=self._has_external_links(nodes, page_domain),
            is_modal=self._is_modal(element, position, width, height, viewport),
            z_index=_parse_z_index(style.get("zIndex", 0)),
            dimensions=Dimensions(width=width, height=height),
        )

        box_shadow = str(style.get("boxShadow", "none") or "none").strip().lower()
        cues = PlacementCues(
            position=position,
            has_shadow=box_shadow not in ("", "none"),
            near_center=self._near_center(rect, viewport),
        )
        return characteristics, cues

    @staticmethod
    def _is_close_control(node: "ElementAccessor") -> bool:
        text = node.text_content().strip().lower()
        if text in CLOSE_TEXTS:
            return True
        for attr in ("aria-label", "class", "id", "title"):
            value = (node.get_attribute(attr) or "").lower()
            if any(token in value for token in CLOSE_TOKENS):
                return True
        return False

    @staticmethod
    def _looks_like_ad(node: "ElementAccessor") -> bool:
        for attr in ("class", "id"):
            value = node.get_attribute(attr) or ""
            if value and any(p.search(value) for p in AD_PATTERNS):
                return True
        if node.tag_name() == "iframe":
            src_host = _host(node.get_attribute("src") or "")
            if src_host and any(h in src_host for h in AD_HOSTS):
                return True
        text = node.text_content().strip().lower()
        return text in ("advertisement", "sponsored", "ad")

    @staticmethod
    def _has_external_links(nodes, page_domain: str) -> bool:
        page_host = _host(f"//{page_domain}") if page_domain else ""
        for node in nodes:
            if node.tag_name() != "a":
                continue
            href = node.get_attribute("href") or ""
            link_host = _host(href)
            if not link_host:
                continue  # relative link
            if not page_host:
                return True
            if link_host != page_host and not link_host.endswith("." + page_host):
                return True
        return False

    @staticmethod
    def _is_modal(element: "ElementAccessor", position: str, width: int, height: int, viewport) -> bool:
        role = (element.get_attribute("role") or "").lower()
        if role in MODAL_ROLES:
            return True
        if (element.get_attribute("aria-modal") or "").lower() == "true":
            return True
        if position != "fixed":
            return False
        vw = _rect_number(viewport, "width")
        vh = _rect_number(viewport, "height")
        if vw <= 0 or vh <= 0:
            return False
        return (width * height) / (vw * vh) >= MODAL_COVERAGE

    @staticmethod
    def _near_center(rect, viewport) -> bool:
        vw = _rect_number(viewport, "width")
        vh = _rect_number(viewport, "height")
        if vw <= 0 or vh <= 0:
            return False
        cx = _rect_number(rect, "x") + _rect_number(rect, "width") / 2
        cy = _rect_number(rect, "y") + _rect_number(rect, "height") / 2
        return abs(cx - vw / 2) <= vw * CENTER_TOLERANCE and abs(cy - vh / 2) <= vh * CENTER_TOLERANCE
