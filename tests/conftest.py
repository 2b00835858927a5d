"""Shared fixtures for the pipewright test suite."""

import threading
import time

import pytest

from pipewright.actions import ActionAdapter
from pipewright.config import PipewrightSettings
from pipewright.model import TriggerContext
from pipewright.ui.console import Console, set_console


class FakeAdapter(ActionAdapter):
    """Records every invocation; returns configured (exit_code, output) per action."""

    def __init__(self, results=None, delay=0.0):
        self.results = results or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def invoke(self, action, options):
        with self._lock:
            self.calls.append((action, dict(options)))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.results.get(action, (0, f"ran {action}"))
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def branch_trigger():
    return TriggerContext(ref="refs/heads/main", sha="abc123")


@pytest.fixture
def tag_trigger():
    return TriggerContext(ref="refs/tags/v1.2.0", sha="abc123")


@pytest.fixture
def settings(tmp_path):
    return PipewrightSettings(workspace=tmp_path, max_workers=4, artifact_timeout=2.0)
