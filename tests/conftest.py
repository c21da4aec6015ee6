from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from changegate.errors import CancellationError  # noqa: E402
from changegate.executor import StepResult  # noqa: E402
from changegate.ui.console import Console, set_console  # noqa: E402


class FakeExecutor:
    """
    Step executor double: exit codes are looked up by command, every call is
    recorded, and commands listed in `blocking` wait until the run is cancelled.
    """

    def __init__(self, exit_codes=None, outputs=None, blocking=()):
        self.exit_codes = dict(exit_codes or {})
        self.outputs = dict(outputs or {})
        self.blocking = set(blocking)
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self._started: dict[str, threading.Event] = {}

    def started(self, cmd: str) -> threading.Event:
        with self._lock:
            return self._started.setdefault(cmd, threading.Event())

    def commands(self) -> list[str]:
        return [step for _job, step in self.calls]

    def run(self, step, ctx):
        with self._lock:
            self.calls.append((ctx.job.name, step.name))
        self.started(step.run).set()
        if step.run in self.blocking:
            if ctx.cancel_event.wait(5):
                raise CancellationError(ctx.job.name, step.name)
        return StepResult(self.exit_codes.get(step.run, 0), self.outputs.get(step.run, ""))


@pytest.fixture(autouse=True)
def console():
    c = Console(debug=False)
    set_console(c)
    return c


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def repo_workflow_path() -> Path:
    return ROOT / "changegate_workflow.py"
