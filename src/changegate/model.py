# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .predicate import Expr


@dataclass(frozen=True)
class Category:
    """
    A named partition of the repository.

    `ignore`: paths matching any of these globs never count.
    `files`:  if given, only paths matching one of these globs count.
    """
    name: str
    ignore: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    when: Optional[Expr] = None
    timeout: float | None = None


Probe = Callable[[], bool]


@dataclass(frozen=True)
class ServiceRequirement:
    """An auxiliary service a job needs healthy before its steps run."""
    name: str
    probe: Probe
    interval: float = 10.0
    timeout: float = 60.0
    retries: int | None = None
    start: Step | None = None
    stop: Step | None = None


@dataclass
class Job:
    """
    A CI job: steps + dependencies + run predicate.

    `needs`: hard dependencies, must end Succeeded or this job is Blocked.
    `after`: ordering only, this job waits for them but never blocks on them.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    after: list[str] = field(default_factory=list)
    when: Optional[Expr] = None
    env: Dict[str, str] = field(default_factory=dict)
    service: ServiceRequirement | None = None

    @property
    def upstream(self) -> list[str]:
        seen: list[str] = []
        for name in [*self.needs, *self.after]:
            if name not in seen:
                seen.append(name)
        return seen


@dataclass
class Workflow:
    name: str
    jobs: list[Job]
    categories: list[Category] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    # None means every branch triggers on push
    push_branches: list[str] | None = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


PUSH = "push"
PULL_REQUEST = "pull_request"
EVENT_KINDS = (PUSH, PULL_REQUEST)


def branch_of(ref: str) -> str:
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


@dataclass(frozen=True)
class Event:
    """A triggering event: what happened, where, and which files changed."""
    kind: str
    ref: str
    changed_files: Tuple[str, ...] = ()
    head_ref: str | None = None
    base_ref: str | None = None
    repository: str | None = None

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {self.kind!r}, expected one of {EVENT_KINDS}")
        # ChangeSet is immutable once captured
        object.__setattr__(self, "changed_files", tuple(self.changed_files))

    @property
    def target_branch(self) -> str:
        if self.kind == PULL_REQUEST and self.base_ref:
            return branch_of(self.base_ref)
        return branch_of(self.ref)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass
class JobReport:
    name: str
    status: JobStatus = JobStatus.PENDING
    reason: str = ""
    failed_step: str | None = None
    exit_code: int | None = None
    output: str = ""
    duration: float | None = None


class RunGraph:
    """
    Snapshot of one pipeline invocation: change set, category flags and the
    status of every job. Statuses only move forward; once terminal they stay.
    """

    def __init__(
        self,
        workflow: Workflow,
        event: Event,
        flags: Dict[str, bool],
        group: str,
        run_id: str | None = None,
    ):
        self.workflow = workflow
        self.event = event
        self.flags = dict(flags)
        self.group = group
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self._lock = threading.Lock()
        self._reports: Dict[str, JobReport] = {j.name: JobReport(name=j.name) for j in workflow.jobs}
        self.cancel_event = threading.Event()
        self.done_event = threading.Event()

    @property
    def change_set(self) -> Tuple[str, ...]:
        return self.event.changed_files

    # ---- status access ----

    def status(self, name: str) -> JobStatus:
        with self._lock:
            return self._reports[name].status

    def statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return {n: r.status for n, r in self._reports.items()}

    def report(self, name: str) -> JobReport:
        with self._lock:
            return self._reports[name]

    def reports(self) -> List[JobReport]:
        with self._lock:
            return list(self._reports.values())

    def transition(self, name: str, status: JobStatus, **details) -> bool:
        """
        Move `name` to `status`. Returns False (and changes nothing) if the job
        is already terminal, e.g. because the run was cancelled meanwhile.
        """
        with self._lock:
            rep = self._reports[name]
            if rep.status.terminal:
                return False
            rep.status = status
            for k, v in details.items():
                setattr(rep, k, v)
            return True

    # ---- lifecycle ----

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self, reason: str = "superseded") -> List[str]:
        """Cancel every non-terminal job and signal in-flight steps."""
        changed: List[str] = []
        with self._lock:
            self.cancel_event.set()
            for rep in self._reports.values():
                if not rep.status.terminal:
                    rep.status = JobStatus.CANCELLED
                    rep.reason = reason
                    changed.append(rep.name)
        return changed

    @property
    def complete(self) -> bool:
        with self._lock:
            return all(r.status.terminal for r in self._reports.values())

    def wait(self, timeout: float | None = None) -> bool:
        return self.done_event.wait(timeout)

    @property
    def exit_code(self) -> int:
        return 1 if any(s == JobStatus.FAILED for s in self.statuses().values()) else 0

    def __repr__(self) -> str:
        return f"RunGraph(run_id={self.run_id!r}, group={self.group!r})"


