"""
ExtractorLogger - Structured logging for the control and worker processes.

One JSON Lines file per process-level module (logs/orchestrator.jsonl,
logs/worker.jsonl, logs/browser.jsonl); components of a module share it.
"""

import logging
import time
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .formatters import ConsoleFormatter, JsonLinesFormatter

LOG_MAX_BYTES = 50 * 1024 * 1024
LOG_BACKUPS = 10

_loggers: dict[str, "ExtractorLogger"] = {}

_log_dir: Optional[Path] = None
_console_level: int = logging.INFO


def _get_log_dir() -> Path:
    """Repo-root logs/ unless configure_logging chose another directory."""
    global _log_dir
    if _log_dir is None:
        root = next(
            (p for p in Path(__file__).resolve().parents if (p / "shared").is_dir()),
            None,
        )
        _log_dir = root / "logs" if root else Path("logs")

    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def _file_handler(module: str) -> logging.Handler:
    handler = RotatingFileHandler(
        _get_log_dir() / f"{module}.jsonl",
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(JsonLinesFormatter())
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(_console_level)
    handler.setFormatter(ConsoleFormatter())
    return handler


def configure_logging(log_dir: Optional[str] = None, console_level: str = "INFO") -> None:
    """
    Override the log directory and console level.

    Loggers created before this call are rebuilt so they pick up the
    new handlers.
    """
    global _log_dir, _console_level
    if log_dir:
        _log_dir = Path(log_dir)
    _console_level = logging.getLevelName(console_level.upper())
    if not isinstance(_console_level, int):
        _console_level = logging.INFO

    for logger in _loggers.values():
        logger.rebuild_handlers()


def get_logger(module: str, component: str, console: bool = True) -> "ExtractorLogger":
    """
    Get or create an ExtractorLogger for a module/component.

    Args:
        module: Process-level module (orchestrator, worker, browser)
        component: Component within module (scheduler, protocol, ...)
        console: Whether to also output to console
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = ExtractorLogger(module, component, console)
    return _loggers[key]


class ExtractorLogger:
    """
    Structured logger.

    Events are identified by a dotted event type rather than a free-form
    message; keyword fields become keys of the JSON line.
    """

    def __init__(self, module: str, component: str, console: bool = True):
        self.module = module
        self.component = component
        self.console = console
        self._logger = logging.getLogger(f"extractor.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        self.rebuild_handlers()

    def rebuild_handlers(self) -> None:
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        self._logger.addHandler(_file_handler(self.module))
        if self.console:
            self._logger.addHandler(_console_handler())

    def event(self, event_type: str, level: str = "INFO", **data: Any) -> None:
        """Log a structured event at the named level."""
        identity = {
            "event_type": event_type,
            "extractor_module": self.module,
            "component": self.component,
        }
        self._logger.log(
            logging.getLevelName(level.upper()) if level else logging.INFO,
            event_type,
            extra={**identity, "event_data": {**identity, **data}},
        )

    def debug(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: Exception,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """Log an exception with its stack trace and error code, if any."""
        self.event(
            event_type,
            level="ERROR",
            error_class=type(error).__name__,
            error_code=getattr(error, "code", None),
            error_message=str(error),
            stack_trace=traceback.format_exc(),
            context=context or {},
        )

    # Turn lifecycle: one start and exactly one of complete/error per turn

    def turn_start(self, kind: str, prompt: str, **kwargs: Any) -> float:
        """
        Log the start of a turn and return its start time.

        Args:
            kind: "task" or "handshake"
            prompt: Full text being submitted
        """
        self.info(
            f"{self.module}.turn.start",
            kind=kind,
            prompt=prompt,
            prompt_length=len(prompt),
            **kwargs,
        )
        return time.time()

    def turn_complete(self, kind: str, response: str, start_time: float, **kwargs: Any) -> None:
        self.info(
            f"{self.module}.turn.complete",
            kind=kind,
            response=response,
            response_length=len(response or ""),
            duration_ms=_elapsed_ms(start_time),
            **kwargs,
        )

    def turn_error(
        self,
        kind: str,
        error: str,
        error_type: str,
        start_time: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        if start_time is not None:
            kwargs["duration_ms"] = _elapsed_ms(start_time)
        self.error(
            f"{self.module}.turn.error",
            kind=kind,
            error=error,
            error_type=error_type,
            **kwargs,
        )


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)
