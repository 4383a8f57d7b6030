"""
Shared fixtures for orchestrator tests.
"""

from typing import Optional

import pytest
import pytest_asyncio

from orchestrator.main import ControlService
from orchestrator.store import DurableStore
from shared.errors import SurfaceUnavailable
from shared.messages import HandshakeComplete, RunTask, StartRun, TaskCompleted


class FakeWorkerChannel:
    """Stands in for WorkerChannel; records everything sent."""

    def __init__(self):
        self.health = {
            "surface_ready": True,
            "surface_handle": "https://gemini.google.com/app/abc123",
            "busy": False,
        }
        self.reachable = True
        self.accept = True
        self.sent: list = []
        self.closed = False

    async def probe(self) -> dict:
        if not self.reachable:
            raise SurfaceUnavailable("Worker not reachable at http://test")
        return dict(self.health)

    async def send(self, message) -> bool:
        self.sent.append(message)
        return self.accept

    async def close(self) -> None:
        self.closed = True

    def sent_of(self, cls) -> list:
        return [m for m in self.sent if isinstance(m, cls)]


@pytest.fixture
def channel() -> FakeWorkerChannel:
    return FakeWorkerChannel()


@pytest_asyncio.fixture
async def service(control_config, channel, clock):
    """ControlService wired to the fake channel and clock."""
    svc = ControlService(control_config, channel=channel, clock=clock)
    yield svc
    await svc.timers.shutdown()


@pytest.fixture
def store(temp_dir) -> DurableStore:
    return DurableStore(temp_dir / "state.json", defaults={"batch_queue": [], "timers": {}})


def _jobs(n: int) -> list[dict]:
    return [{"title": f"Job {i}", "job_url": f"https://example.com/job/{i}"} for i in range(n)]


def _completed(
    batch_id: str,
    task_index: int,
    result: Optional[dict] = None,
    error: Optional[str] = None,
) -> TaskCompleted:
    return TaskCompleted(
        batch_id=batch_id,
        task_index=task_index,
        result=result if result is not None else {
            "personName": ["Jane Doe"],
            "companyName": "PeopleMovers",
            "confidence": 0.8,
            "reasoning": "found in feedback",
        },
        original_payload={"title": f"Job {task_index}"},
        error=error,
    )


async def _begin(service: ControlService) -> None:
    """Start processing and acknowledge the handshake."""
    assert await service.start() == "started"
    assert service.channel.sent_of(StartRun)
    await service.handle_message(HandshakeComplete())


def _dispatched(channel: FakeWorkerChannel) -> list[tuple[str, int]]:
    return [(m.batch_id, m.task_index) for m in channel.sent_of(RunTask)]


@pytest.fixture
def jobs():
    """Factory for n task payloads: jobs(3)."""
    return _jobs


@pytest.fixture
def make_completed():
    """Factory for TaskCompleted messages: make_completed(batch_id, index, error=...)."""
    return _completed


@pytest.fixture
def begin():
    """Async helper: await begin(service) starts a run and completes the handshake."""
    return _begin


@pytest.fixture
def dispatched():
    """dispatched(channel) -> [(batch_id, task_index), ...] in send order."""
    return _dispatched
