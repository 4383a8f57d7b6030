"""
Turn context management for structured logging.

Uses ContextVar so concurrent asyncio tasks (timer handlers, HTTP
handlers, background turns) each carry their own context.
"""

import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

_correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
_batch_id: ContextVar[str] = ContextVar('batch_id', default='')
_task_index: ContextVar[Optional[int]] = ContextVar('task_index', default=None)


def get_correlation_id() -> str:
    """Get current correlation ID, generating one if none exists."""
    cid = _correlation_id.get()
    if not cid:
        cid = uuid.uuid4().hex[:12]
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for current context."""
    _correlation_id.set(cid)


def get_batch_id() -> Optional[str]:
    """Get the batch id of the turn being handled, if any."""
    return _batch_id.get() or None


def get_task_index() -> Optional[int]:
    """Get the task index of the turn being handled, if any."""
    return _task_index.get()


@contextmanager
def turn_context(
    batch_id: Optional[str] = None,
    task_index: Optional[int] = None,
    correlation_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Bind a turn's identity to every log line emitted inside the block.

    Yields:
        The correlation ID being used

    Example:
        with turn_context(batch_id="1712-ab12", task_index=4):
            log.info("worker.protocol.submitted")
    """
    cid_token = _correlation_id.set(correlation_id or uuid.uuid4().hex[:12])
    batch_token = _batch_id.set(batch_id or '')
    index_token = _task_index.set(task_index)
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(cid_token)
        _batch_id.reset(batch_token)
        _task_index.reset(index_token)
