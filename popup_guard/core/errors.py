"""
Error taxonomy for the popup engine.

Every error is caught at the boundary of the component that owns it and
converted to a safe default; none of them escape the engine's public entry
points.
"""


class PopupGuardError(Exception):
    """Base class for all engine errors."""


class FeatureExtractionError(PopupGuardError):
    """The element accessor failed (style, rect or attribute query)."""


class StoreIOError(PopupGuardError):
    """A persistent store read/write failed."""


class TimerError(PopupGuardError):
    """A scheduled callback could not be armed or cancelled."""


class InvalidRecordError(PopupGuardError):
    """A record or payload is missing fields or has the wrong shape."""


class ConfigError(PopupGuardError):
    """Configuration could not be loaded or failed validation."""
