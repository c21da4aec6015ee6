# errors.py
from __future__ import annotations

from dataclasses import dataclass


class ChangegateError(Exception):
    """Base class for every error raised by changegate."""


# ----------------------------------------------------------------------
# Load-time errors (fatal, no run is started)
# ----------------------------------------------------------------------

class WorkflowError(ChangegateError):
    """The workflow file could not be loaded or is malformed."""


class DuplicateJobError(WorkflowError):
    def __init__(self, names: list[str]):
        self.names = names
        super().__init__(f"Duplicate job names found: {names}")


class UnknownDependencyError(WorkflowError):
    def __init__(self, job: str, dependency: str, known: list[str]):
        self.job = job
        self.dependency = dependency
        super().__init__(
            f"Job '{job}' needs missing job '{dependency}'. Known jobs: {known}"
        )


class CyclicDependencyError(WorkflowError):
    def __init__(self, stuck: list[str]):
        self.stuck = stuck
        super().__init__(f"Job graph has a cycle. Stuck jobs: {stuck}")


class UnknownCategoryError(WorkflowError):
    def __init__(self, owner: str, category: str, known: list[str]):
        self.owner = owner
        self.category = category
        super().__init__(
            f"'{owner}' refers to unknown category '{category}'. Known categories: {known}"
        )


# ----------------------------------------------------------------------
# Run-time errors (local to a job)
# ----------------------------------------------------------------------

@dataclass
class StepExecutionError(ChangegateError):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class ServiceTimeoutError(ChangegateError):
    job: str
    service: str
    attempts: int
    elapsed: float

    def __str__(self) -> str:
        return (
            f"[{self.job}] service '{self.service}' not healthy after "
            f"{self.attempts} probe(s) in {self.elapsed:.1f}s"
        )


class CancellationError(ChangegateError):
    """Raised inside a job when its run has been superseded."""

    def __init__(self, job: str, step: str | None = None):
        self.job = job
        self.step = step
        where = f" during step '{step}'" if step else ""
        super().__init__(f"[{job}] cancelled{where}")
