"""
Root-level shared fixtures for all extractor tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Generator, Optional

import pytest

from browser.base import AutomationSurface
from shared.config import ControlConfig, ProtocolConfig
from shared.logging import configure_logging


@pytest.fixture(scope="session", autouse=True)
def isolated_logs(tmp_path_factory):
    """Keep test runs out of the repo's logs/ directory."""
    configure_logging(log_dir=str(tmp_path_factory.mktemp("logs")), console_level="WARNING")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="extractor_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def control_config(temp_dir) -> ControlConfig:
    """
    Control settings for tests.

    Every delay is distinct and long, so an armed timer never fires on its
    own during a test and its fire time identifies which delay was used.
    """
    return ControlConfig(
        data_dir=temp_dir / "data",
        export_dir=temp_dir / "exports",
        turn_deadline_seconds=180,
        max_turn_retries=5,
        delays={
            "after_completion": 30,
            "after_handshake": 31,
            "after_timeout": 32,
            "after_skip": 33,
            "after_error": 34,
            "on_start": 35,
            "on_resume": 36,
        },
        export_on_drain=False,
        cleanup_after_drain=False,
    )


@pytest.fixture
def protocol_config() -> ProtocolConfig:
    return ProtocolConfig()


class FakeSleep:
    """Records requested pauses instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


EXTRACTION_RESPONSE = json.dumps({
    "personName": ["Jane Doe"],
    "companyName": "PeopleMovers",
    "clientWebsite": "https://peoplemovers.example",
    "confidence": 0.9,
    "reasoning": "1. Person Name(s) found in feedback as 'Thanks Jane'.",
})


class FakeSurface(AutomationSurface):
    """
    In-memory chat surface.

    accept_after: how many submit actions (Enter or click) are ignored
        before the surface produces its next output; None means never.
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[list[str]] = None,
        input_present: bool = True,
        accept_after: Optional[int] = 0,
        button_enabled: bool = True,
        growing: bool = False,
        busy: bool = False,
    ):
        self.responses = list(responses) if responses is not None else [EXTRACTION_RESPONSE]
        self.input_present = input_present
        self.accept_after = accept_after
        self.button_enabled = button_enabled
        self.growing = growing
        self.busy = busy

        self.outputs: list[str] = []
        self.typed = ""
        self.chunks: list[str] = []
        self.submits = 0
        self.clicks = 0
        self.nudges = 0
        self.clears = 0
        self._actions = 0
        self._waiting = False

    @property
    def handle(self) -> Optional[str]:
        return "fake://surface"

    async def find_input(self) -> bool:
        return self.input_present

    async def clear_input(self) -> None:
        self.clears += 1
        self.typed = ""
        self._actions = 0
        self._waiting = True

    async def type_chunk(self, text: str) -> None:
        self.chunks.append(text)
        self.typed += text

    def _submitted(self) -> None:
        self._actions += 1
        if not self._waiting or self.accept_after is None:
            return
        if self._actions > self.accept_after:
            self._waiting = False
            self.outputs.append(self.responses.pop(0) if self.responses else "")

    async def press_submit(self) -> None:
        self.submits += 1
        self._submitted()

    async def click_submit(self) -> bool:
        if not self.button_enabled:
            return False
        self.clicks += 1
        self._submitted()
        return True

    async def nudge_input(self) -> None:
        self.nudges += 1
        self.typed += " "

    async def output_count(self) -> int:
        return len(self.outputs)

    async def is_busy(self) -> bool:
        return self.busy

    async def latest_output_text(self) -> str:
        if not self.outputs:
            return ""
        if self.growing:
            self.outputs[-1] += "."
        return self.outputs[-1]


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def make_surface():
    """
    Factory for FakeSurfaces with non-default behaviour.

    Usage:
        surface = make_surface(accept_after=None, button_enabled=False)
    """
    return FakeSurface


@pytest.fixture
def sample_payload() -> dict:
    """A main job post payload as it appears in ingested files."""
    return {
        "title": "Senior Python Developer",
        "summary": "We at PeopleMovers need help with our scheduler.",
        "job_url": "https://example.com/job/1",
        "job_id": "job-1",
        "parent_id": "parent-1",
        "feedback_received_From_Freelancer": ["Great to work with Jane!"],
        "about_the_client": {"location": "Berlin"},
    }


@pytest.fixture
def extraction_response() -> str:
    """A well-formed model reply, JSON fenced the way the chat UI renders it."""
    return f"Here you go:\n```json\n{EXTRACTION_RESPONSE}\n```"
