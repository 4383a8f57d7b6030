"""
Structured logging for the extractor processes.

JSON Lines logging with correlation IDs and turn identity, so a single
task can be traced from dispatch in the control process through the
worker's turn and back.

Usage:
    from shared.logging import get_logger, turn_context

    log = get_logger("worker", "protocol")

    with turn_context(batch_id=batch_id, task_index=3):
        log.info("worker.protocol.submitted", chunks=42)
"""

from .logger import get_logger, configure_logging, ExtractorLogger
from .context import (
    turn_context,
    get_correlation_id,
    set_correlation_id,
    get_batch_id,
    get_task_index,
)

__all__ = [
    "get_logger",
    "configure_logging",
    "ExtractorLogger",
    "turn_context",
    "get_correlation_id",
    "set_correlation_id",
    "get_batch_id",
    "get_task_index",
]
