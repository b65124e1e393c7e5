"""
popup_guard - Version and metadata
"""

__version__ = "1.0.0"
__author__ = "popup_guard Contributors"
__license__ = "MIT"
__description__ = (
    "Popup scoring, decision and learning engine for overlay-blocking browser extensions"
)
