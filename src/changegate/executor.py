# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Protocol

from .errors import CancellationError
from .model import Job, Step


TOOL_HINTS = {
    "cargo": "Install Rust via rustup or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "diesel": "Install diesel_cli (cargo install diesel_cli).",
    "pnpm": "Install pnpm (npm install -g pnpm) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "pg_isready": "Install the PostgreSQL client tools.",
}

# exit code a POSIX shell uses for "command not found"
COMMAND_NOT_FOUND = 127


def hint_for(cmd: str, exit_code: int) -> str | None:
    if exit_code != COMMAND_NOT_FOUND:
        return None
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH." if tool else None)


@dataclass
class StepContext:
    """Everything a step needs besides its own definition."""
    job: Job
    repo_root: Path
    cancel_event: threading.Event
    env: Dict[str, str] = field(default_factory=dict)
    grace_period: float = 5.0


@dataclass(frozen=True)
class StepResult:
    exit_code: int
    output: str = ""


class StepExecutor(Protocol):
    """
    Capability to run one opaque external step.

    Implementations return the exit status and captured output, and raise
    CancellationError if `ctx.cancel_event` fires while the step runs.
    """

    def run(self, step: Step, ctx: StepContext) -> StepResult:
        ...


class ShellExecutor:
    """Runs steps as shell commands in the repository checkout."""

    def __init__(self, poll_interval: float = 0.1, output_tail: int = 4000):
        self.poll_interval = poll_interval
        self.output_tail = output_tail

    def run(self, step: Step, ctx: StepContext) -> StepResult:
        cwd = (ctx.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{ctx.job.name}] step '{step.name}' cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(ctx.env)
        env.update(step.env)

        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            encoding="utf-8",
            errors="replace",  # step output is arbitrary bytes
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,  # so termination reaches the whole process group
        )

        output: list[str] = []
        reader = threading.Thread(target=self._drain, args=(proc, output), daemon=True)
        reader.start()

        started = time.monotonic()
        while proc.poll() is None:
            if ctx.cancel_event.wait(self.poll_interval):
                self._terminate(proc, ctx.grace_period)
                reader.join(timeout=1.0)
                raise CancellationError(ctx.job.name, step.name)
            if step.timeout is not None and time.monotonic() - started > step.timeout:
                self._terminate(proc, ctx.grace_period)
                reader.join(timeout=1.0)
                text = "".join(output) + f"\nstep timed out after {step.timeout}s"
                return StepResult(exit_code=124, output=text[-self.output_tail:])

        reader.join()
        text = "".join(output)
        return StepResult(exit_code=proc.returncode, output=text[-self.output_tail:])

    @staticmethod
    def _drain(proc: subprocess.Popen, sink: list[str]) -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            sink.append(line)
        proc.stdout.close()

    @staticmethod
    def _terminate(proc: subprocess.Popen, grace_period: float) -> None:
        """SIGTERM, wait for the grace period, then SIGKILL."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            proc.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            proc.wait()
