"""
Operator log: short human-readable lines for whoever is running a batch.

Lines come from the control process itself and from the worker's LogLine
messages. Each one is mirrored to the structured log.
"""

from collections import deque
from datetime import datetime
from typing import Optional

from shared.logging import get_logger

log = get_logger("orchestrator", "oplog", console=False)


class OperatorLog:
    """Bounded in-memory tail of operator lines."""

    def __init__(self, maxlen: int = 500):
        self._lines: deque[dict] = deque(maxlen=maxlen)

    def write(self, message: str, source: str = "control", level: str = "INFO") -> None:
        entry = {
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "source": source,
            "message": message,
        }
        self._lines.append(entry)
        log.event("orchestrator.oplog.line", level=level, source=source, message=message)

    def tail(self, n: Optional[int] = 50) -> list[dict]:
        lines = list(self._lines)
        return lines[-n:] if n else lines

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)
