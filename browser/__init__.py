"""Browser automation surfaces."""

from .base import AutomationSurface, authenticate, get_browser_context
from .gemini import GeminiSurface

__all__ = [
    "AutomationSurface",
    "GeminiSurface",
    "authenticate",
    "get_browser_context",
]
