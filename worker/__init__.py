"""
Worker process: runs the Interaction Protocol against the automation
surface, one turn at a time, and reports each result to control.
"""

from .api import WorkerService, create_app
from .channel import ControlChannel
from .parsing import extract_structured, parse_structured
from .prompts import build_prompt
from .protocol import InteractionProtocol
from .quiescence import await_quiescence

__all__ = [
    "ControlChannel",
    "InteractionProtocol",
    "WorkerService",
    "await_quiescence",
    "build_prompt",
    "create_app",
    "extract_structured",
    "parse_structured",
]
