"""
Message contract between the control and worker processes.

Messages are JSON bodies posted to the peer's /messages endpoint and
discriminated by their ``action`` field. Delivery is at-most-once; the
receiver must tolerate duplicates and stale messages.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class Action(str, Enum):
    """Logical action names."""
    START_RUN = "start_run"
    HANDSHAKE_COMPLETE = "handshake_complete"
    RUN_TASK = "run_task"
    TASK_COMPLETED = "task_completed"
    STOP_RUN = "stop_run"
    LOG_LINE = "log_line"


class StartRun(BaseModel):
    """Control → worker: perform the one-time handshake."""
    action: Literal["start_run"] = "start_run"
    preamble: Optional[str] = None


class HandshakeComplete(BaseModel):
    """Worker → control: handshake finished (or failed, see ``error``)."""
    action: Literal["handshake_complete"] = "handshake_complete"
    error: Optional[str] = None


class RunTask(BaseModel):
    """Control → worker: run one turn for a task."""
    action: Literal["run_task"] = "run_task"
    task: dict[str, Any]
    batch_id: str
    task_index: int
    display_title: str = ""


class TaskCompleted(BaseModel):
    """Worker → control: sent exactly once per dispatched task."""
    action: Literal["task_completed"] = "task_completed"
    result: Optional[dict[str, Any]] = None
    original_payload: dict[str, Any] = Field(default_factory=dict)
    batch_id: str
    task_index: int
    error: Optional[str] = None  # ExtractorError code when the turn degraded


class StopRun(BaseModel):
    """Best-effort stop; does not abort an in-flight turn."""
    action: Literal["stop_run"] = "stop_run"


class LogLine(BaseModel):
    """Operator-facing log line. Purely observational."""
    action: Literal["log_line"] = "log_line"
    message: str


Message = Annotated[
    Union[StartRun, HandshakeComplete, RunTask, TaskCompleted, StopRun, LogLine],
    Field(discriminator="action"),
]

_message_adapter = TypeAdapter(Message)


def parse_message(data: dict) -> BaseModel:
    """Validate a raw message body. Raises pydantic.ValidationError."""
    return _message_adapter.validate_python(data)
