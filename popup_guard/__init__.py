"""
popup_guard - decides whether overlay elements are intrusive popups and
learns from the user's decisions.

    from popup_guard import PopupGuardEngine
    engine = PopupGuardEngine()
"""

from .__version__ import __version__
from .core.orchestrator import PopupGuardEngine

__all__ = ["__version__", "PopupGuardEngine"]
