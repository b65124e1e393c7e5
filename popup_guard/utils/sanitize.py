"""
Input sanitization for messages coming from the extension.

Content scripts run inside arbitrary pages, so every id, URL and decision
they send is bounded and validated before it reaches the engine.
"""

import logging
import re
import unicodedata
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from ..core.errors import InvalidRecordError
from ..core.models import USER_SUBMITTABLE_DECISIONS, UserDecision

logger = logging.getLogger(__name__)

# Maximum lengths to prevent resource exhaustion
MAX_POPUP_ID_LENGTH = 128
MAX_URL_LENGTH = 2048
MAX_DOMAIN_LENGTH = 253
MAX_SNAPSHOT_DEPTH = 12
MAX_SNAPSHOT_NODES = 500

_POPUP_ID_RE = re.compile(r"^[A-Za-z0-9_.:\-]+$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_text(text: Any, max_length: int) -> str:
    """Strip control characters, normalize unicode and truncate."""
    if not text:
        return ""
    if not isinstance(text, str):
        text = str(text)

    text = _CONTROL_CHARS_RE.sub("", text)
    text = unicodedata.normalize("NFKC", text)

    if len(text) > max_length:
        text = text[:max_length]
        logger.debug(f"Text truncated to {max_length} characters")
    return text


def sanitize_popup_id(popup_id: Any) -> str:
    """
    Validate a popup identifier.

    Raises:
        InvalidRecordError: if the id is empty, too long or has odd characters
    """
    popup_id = sanitize_text(popup_id, MAX_POPUP_ID_LENGTH + 1).strip()
    if not popup_id:
        raise InvalidRecordError("popup id is required")
    if len(popup_id) > MAX_POPUP_ID_LENGTH:
        raise InvalidRecordError("popup id too long")
    if not _POPUP_ID_RE.match(popup_id):
        raise InvalidRecordError(f"popup id contains invalid characters: {popup_id!r}")
    return popup_id


def sanitize_url(url: Any) -> str:
    """Bound a page URL; non-http(s) schemes are dropped."""
    url = sanitize_text(url, MAX_URL_LENGTH).strip()
    if not url:
        return ""
    scheme = urlsplit(url).scheme.lower()
    if scheme not in ("http", "https", "file"):
        logger.debug(f"Dropping URL with unsupported scheme '{scheme}'")
        return ""
    return url


def extract_domain(url: str) -> str:
    """Hostname of a URL, lower-cased, without a leading 'www.'."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower()[:MAX_DOMAIN_LENGTH]
    if host.startswith("www."):
        host = host[4:]
    return host


def sanitize_decision(decision: Any) -> UserDecision:
    """
    Parse a decision submitted by the UI.

    Raises:
        InvalidRecordError: for anything but close/keep/dismiss
    """
    try:
        value = UserDecision(str(decision).strip().lower())
    except ValueError:
        raise InvalidRecordError(f"invalid decision: {decision!r}")
    if value not in USER_SUBMITTABLE_DECISIONS:
        raise InvalidRecordError(f"decision not accepted from the UI: {value.value}")
    return value


def sanitize_snapshot(snapshot: Any, _depth: int = 0, _budget: Optional[list] = None) -> Dict:
    """
    Bound a serialized element tree in depth and node count.

    Children past the limits are dropped rather than rejected.

    Raises:
        InvalidRecordError: if the root is not a mapping
    """
    if _budget is None:
        _budget = [MAX_SNAPSHOT_NODES]
    if not isinstance(snapshot, dict):
        raise InvalidRecordError("element snapshot must be an object")

    _budget[0] -= 1
    cleaned = dict(snapshot)
    children = snapshot.get("children") or []
    kept = []
    if isinstance(children, list) and _depth < MAX_SNAPSHOT_DEPTH:
        for child in children:
            if _budget[0] <= 0:
                break
            if isinstance(child, dict):
                kept.append(sanitize_snapshot(child, _depth + 1, _budget))
    cleaned["children"] = kept
    return cleaned
