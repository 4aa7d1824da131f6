"""Shared fakes for pipeline tests."""
from typing import Any, List

import pytest

from command_pipeline.connectivity import ConnectivityMonitor
from command_pipeline.models import AIResult
from observability.event_store import event_store


class FakeBackend:
    """Backend returning (or raising) scripted outcomes in order; the last one repeats."""

    name = "fake"

    def __init__(self, *outcomes: Any):
        self.outcomes = list(outcomes) or [AIResult(text="Bonjour")]
        self.prompts: List[Any] = []
        self.closed = False

    async def generate(self, prompt):
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self):
        self.closed = True


class FakeEngine:
    """Recognition engine recording the calls made by the coordinator."""

    def __init__(self):
        self.calls: List[str] = []
        self.fail_start = False

    def start(self):
        self.calls.append("start")
        if self.fail_start:
            raise RuntimeError("recognizer unavailable")

    def stop(self):
        self.calls.append("stop")

    def abort(self):
        self.calls.append("abort")


class FakeSink:
    def __init__(self):
        self.spoken: List[str] = []
        self.statuses: List[str] = []
        self.directives: List[str] = []

    def display(self, text):
        self.spoken.append(text)

    def status(self, text):
        self.statuses.append(text)

    def execute(self, directive):
        self.directives.append(directive)


class RecordingSleep:
    """Sleep stand-in: records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def clean_event_store():
    event_store.clear()
    yield
    event_store.clear()


@pytest.fixture
def connectivity():
    return ConnectivityMonitor()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
