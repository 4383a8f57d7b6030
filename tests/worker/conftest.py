"""
Shared fixtures for worker tests.
"""

import pytest

from shared.messages import RunTask


class FakeControlChannel:
    """Stands in for ControlChannel; records what the worker reports."""

    def __init__(self):
        self.sent: list = []
        self.lines: list[str] = []
        self.closed = False

    async def send(self, message, attempts=None) -> bool:
        self.sent.append(message)
        return True

    async def log_line(self, text: str) -> None:
        self.lines.append(text)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def control_channel() -> FakeControlChannel:
    return FakeControlChannel()


@pytest.fixture
def run_task(sample_payload):
    """Factory for RunTask messages: run_task(index=0, task=None)."""
    def _create(index: int = 0, task: dict = None, batch_id: str = "1712-abc123") -> RunTask:
        task = task if task is not None else sample_payload
        return RunTask(
            task=task,
            batch_id=batch_id,
            task_index=index,
            display_title=task.get("title", "Untitled"),
        )
    return _create
