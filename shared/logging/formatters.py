"""
JSON Lines and console formatters for structured logging.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .context import get_correlation_id, get_batch_id, get_task_index


class JsonLinesFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines (one JSON object per line).

    Each entry carries timestamp, level, event_type, module, component and
    correlation_id, plus batch_id/task_index while inside a turn_context.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, 'event_type', 'log'),
            "module": getattr(record, 'extractor_module', record.module),
            "component": getattr(record, 'component', record.funcName),
            "correlation_id": get_correlation_id(),
        }

        batch_id = get_batch_id()
        if batch_id:
            log_entry["batch_id"] = batch_id

        task_index = get_task_index()
        if task_index is not None:
            log_entry["task_index"] = task_index

        if hasattr(record, 'event_data'):
            log_entry.update(record.event_data)

        if record.getMessage() and record.getMessage() != log_entry.get("event_type"):
            log_entry["message"] = record.getMessage()

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=self._json_serializer)

    def _json_serializer(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if hasattr(obj, '__dict__'):
            return str(obj)
        return repr(obj)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Format: timestamp [LEVEL] [module.component] event_type key=value ...
    """

    # Fields too bulky for a terminal line
    _HIDDEN = {"event_type", "extractor_module", "component", "stack_trace", "prompt", "response"}

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        module = getattr(record, 'extractor_module', record.module)
        component = getattr(record, 'component', '')

        prefix = f"{timestamp} [{record.levelname}]"
        if module and component:
            prefix += f" [{module}.{component}]"

        message = record.getMessage()
        data = getattr(record, 'event_data', {})
        fields = " ".join(
            f"{key}={value}" for key, value in data.items() if key not in self._HIDDEN
        )
        if fields:
            message = f"{message} {fields}"

        return f"{prefix} {message}"
