# src/changegate/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from .model import Category, Job, ServiceRequirement, Step, Workflow
from .predicate import (
    ALWAYS,
    All,
    Any_,
    BranchIs,
    Changed,
    EventIs,
    Expr,
    Not,
    RepositoryIs,
)
from .service import CommandProbe, TcpProbe


# ---------------------------------------------------------------------
# Predicate helpers
# ---------------------------------------------------------------------

def changed(category: str) -> Expr:
    return Changed(category)


def event_is(kind: str) -> Expr:
    return EventIs(kind)


def branch_is(branch: str) -> Expr:
    return BranchIs(branch)


def repository_is(repository: str) -> Expr:
    return RepositoryIs(repository)


def all_of(*exprs: Expr) -> Expr:
    return All(tuple(exprs))


def any_of(*exprs: Expr) -> Expr:
    return Any_(tuple(exprs))


def not_(expr: Expr) -> Expr:
    return Not(expr)


def always() -> Expr:
    return ALWAYS


# ---------------------------------------------------------------------
# Step / category / service helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: Optional[Expr] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        when=when,
        timeout=timeout,
    )


def category(name: str, *, ignore: Iterable[str] = (), files: Iterable[str] = ()) -> Category:
    return Category(name=name, ignore=tuple(ignore), files=tuple(files))


def service(
    name: str,
    *,
    health_cmd: str | None = None,
    port: int | None = None,
    host: str = "localhost",
    probe: Optional[Callable[[], bool]] = None,
    interval: float = 10.0,
    timeout: float = 60.0,
    probe_timeout: float = 5.0,
    retries: int | None = None,
    start: str | Step | None = None,
    stop: str | Step | None = None,
) -> ServiceRequirement:
    """
    Describe an auxiliary service. Exactly one of `health_cmd`, `port` or
    `probe` selects how health is checked.
    """
    given = [p for p in (health_cmd, port, probe) if p is not None]
    if len(given) != 1:
        raise ValueError(f"service({name!r}) needs exactly one of health_cmd, port, probe")

    if health_cmd is not None:
        probe = CommandProbe(health_cmd, timeout=probe_timeout)
    elif port is not None:
        probe = TcpProbe(host, port, timeout=probe_timeout)

    if isinstance(start, str):
        start = Step(name=f"Start {name}", run=start)
    if isinstance(stop, str):
        stop = Step(name=f"Stop {name}", run=stop)

    return ServiceRequirement(
        name=name,
        probe=probe,
        interval=interval,
        timeout=timeout,
        retries=retries,
        start=start,
        stop=stop,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    after: Optional[List[str]] = None,
    when: Optional[Expr] = None,
    env: Optional[Dict[str, str]] = None,
    service: Optional[ServiceRequirement] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        after=list(after or []),
        when=when,
        env={k: str(v) for k, v in (env or {}).items()},
        service=service,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._after: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._when: Optional[Expr] = None
        self._service: Optional[ServiceRequirement] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_after(self, *job_names: str):
        self._after.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, when: Optional[Expr] = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, when=when))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def run_when(self, expr: Expr):
        self._when = expr
        return self

    def with_service(self, requirement: ServiceRequirement):
        self._service = requirement
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            after=list(self._after),
            when=self._when,
            env=dict(self._env),
            service=self._service,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "ci",
    categories: Iterable[Category] = (),
    env: Optional[Dict[str, str]] = None,
    push_branches: Optional[List[str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

        from changegate import wf, job, sh, category, changed

        def workflow():
            return wf(
                job("lint", sh("Lint", "make lint"), when=changed("backend")),
                categories=[category("backend", ignore=["docs/**"])],
            )
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        categories=list(categories),
        env={k: str(v) for k, v in (env or {}).items()},
        push_branches=push_branches,
    )
