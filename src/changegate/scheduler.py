# scheduler.py
from __future__ import annotations

import heapq
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

from .dag import JobGraph
from .errors import CancellationError, ServiceTimeoutError, StepExecutionError
from .executor import ShellExecutor, StepContext, StepExecutor, hint_for
from .model import Event, Job, JobStatus, RunGraph, ServiceRequirement
from .predicate import evaluate
from .service import GateOutcome, await_healthy
from .ui.console import Console, get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class PlannedJob:
    name: str
    status: JobStatus  # SUCCEEDED here means "would run"
    reason: str


def decide(job: Job, flags: Mapping[str, bool], event: Event, upstream: Mapping[str, JobStatus]) -> Tuple[JobStatus | None, str]:
    """
    Decide a job that is ready to go.

    Returns (SKIPPED, why), (BLOCKED, why) or (None, "") meaning "run it".
    The predicate is checked first so Skipped wins over Blocked.
    """
    if not evaluate(job.when, flags, event):
        return JobStatus.SKIPPED, f"condition false: {job.when}"
    bad = [d for d in job.needs if upstream[d] is not JobStatus.SUCCEEDED]
    if bad:
        return JobStatus.BLOCKED, ", ".join(f"needs {d} ({upstream[d].value})" for d in bad)
    return None, ""


def plan(graph: JobGraph, flags: Mapping[str, bool], event: Event) -> List[PlannedJob]:
    """
    Static plan, without executing anything: assumes every job that runs
    succeeds and reports which jobs would run, be skipped, or be blocked.
    """
    planned: Dict[str, JobStatus] = {}
    out: List[PlannedJob] = []
    for job in graph.ordered_jobs():
        status, reason = decide(job, flags, event, planned)
        if status is None:
            status, reason = JobStatus.SUCCEEDED, f"condition true: {job.when or 'always'}"
        planned[job.name] = status
        out.append(PlannedJob(job.name, status, reason))
    return out


class Scheduler:
    """
    Runs the jobs of a RunGraph on a worker pool.

    A job starts only once all of its dependencies are terminal. Failures
    stay local: jobs that do not depend on a failed job keep running.
    """

    def __init__(
        self,
        graph: JobGraph,
        executor: StepExecutor | None = None,
        *,
        repo_root: str | Path = ".",
        max_workers: int | None = None,
        grace_period: float = 5.0,
        console: Console | None = None,
    ):
        self.graph = graph
        self.executor = executor or ShellExecutor()
        self.repo_root = Path(repo_root).resolve()
        self.max_workers = max_workers or default_workers()
        self.grace_period = grace_period
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self, run: RunGraph) -> RunGraph:
        try:
            self._drive(run)
        finally:
            run.done_event.set()
        return run

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _drive(self, run: RunGraph) -> None:
        unresolved: Dict[str, int] = {
            name: len(self.graph.dependencies(name)) for name in self.graph.order
        }
        ready: List[Tuple[int, str]] = [
            (self.graph.position(n), n) for n, count in unresolved.items() if count == 0
        ]
        heapq.heapify(ready)

        in_flight: Dict[Future, str] = {}
        started: Dict[str, float] = {}

        def resolve(name: str) -> None:
            for child in self.graph.dependents(name):
                unresolved[child] -= 1
                if unresolved[child] == 0:
                    heapq.heappush(ready, (self.graph.position(child), child))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready:
                    _, name = heapq.heappop(ready)
                    job = self.graph[name]

                    status, reason = decide(job, run.flags, run.event, run.statuses())
                    if status is not None:
                        if run.transition(name, status, reason=reason):
                            self.console.print_job_finished(name, status, reason)
                        resolve(name)
                        continue

                    # False if the run was cancelled meanwhile
                    if not run.transition(name, JobStatus.RUNNING):
                        resolve(name)
                        continue

                    started[name] = time.monotonic()
                    in_flight[pool.submit(self._run_job, job, run)] = name

                if not in_flight:
                    break

                # wait for a completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    self._record(run, name, fut, time.monotonic() - started[name])
                    resolve(name)

    def _record(self, run: RunGraph, name: str, fut: Future, duration: float) -> None:
        try:
            fut.result()
        except StepExecutionError as e:
            run.transition(
                name,
                JobStatus.FAILED,
                reason=f"step '{e.step}' exited {e.exit_code}",
                failed_step=e.step,
                exit_code=e.exit_code,
                output=e.output,
                duration=duration,
            )
            self.console.print_failure(e.step, str(e), exit_code=e.exit_code, hint=hint_for(e.cmd, e.exit_code))
        except ServiceTimeoutError as e:
            run.transition(name, JobStatus.FAILED, reason=str(e), failed_step=f"service {e.service}", duration=duration)
            self.console.print_failure(name, str(e), is_job=True)
        except CancellationError as e:
            # normally already Cancelled by RunGraph.cancel()
            run.transition(name, JobStatus.CANCELLED, reason=str(e), duration=duration)
        except Exception as e:
            run.transition(name, JobStatus.FAILED, reason=f"{type(e).__name__}: {e}", output=str(e), duration=duration)
            self.console.print_failure(name, str(e), is_job=True)
        else:
            run.transition(name, JobStatus.SUCCEEDED, duration=duration)

        self.console.print_job_finished(name, run.status(name))

    # ------------------------------------------------------------------
    # Job execution (worker threads)
    # ------------------------------------------------------------------

    def _run_job(self, job: Job, run: RunGraph) -> None:
        self.console.print_job_start(job.name)
        ctx = StepContext(
            job=job,
            repo_root=self.repo_root,
            cancel_event=run.cancel_event,
            env={**run.workflow.env, **job.env},
            grace_period=self.grace_period,
        )

        try:
            if job.service is not None:
                self._bring_up(job, job.service, run, ctx)

            for step in job.steps:
                if run.cancelled:
                    raise CancellationError(job.name, step.name)
                if not evaluate(step.when, run.flags, run.event):
                    self.console.print_step_skipped(job.name, step.name)
                    continue

                self.console.print_step(job.name, step.name)
                result = self.executor.run(step, ctx)
                if result.exit_code != 0:
                    # remaining steps are not run
                    raise StepExecutionError(
                        job=job.name,
                        step=step.name,
                        cmd=step.run,
                        exit_code=result.exit_code,
                        output=result.output,
                    )
        finally:
            if job.service is not None and job.service.stop is not None:
                self._tear_down(job, job.service, ctx)

    def _bring_up(self, job: Job, service: ServiceRequirement, run: RunGraph, ctx: StepContext) -> None:
        if service.start is not None:
            self.console.print_step(job.name, service.start.name)
            result = self.executor.run(service.start, ctx)
            if result.exit_code != 0:
                raise StepExecutionError(
                    job=job.name,
                    step=service.start.name,
                    cmd=service.start.run,
                    exit_code=result.exit_code,
                    output=result.output,
                )

        self.console.print_service_wait(job.name, service.name)
        gate = await_healthy(
            service.probe,
            service.interval,
            service.timeout,
            retries=service.retries,
            cancel=run.cancel_event,
        )
        if gate.outcome is GateOutcome.CANCELLED:
            raise CancellationError(job.name, f"service {service.name}")
        if gate.outcome is GateOutcome.TIMED_OUT:
            raise ServiceTimeoutError(
                job=job.name,
                service=service.name,
                attempts=gate.attempts,
                elapsed=gate.elapsed,
            )
        self.console.print_service_ready(job.name, service.name, gate.attempts, gate.elapsed)

    def _tear_down(self, job: Job, service: ServiceRequirement, ctx: StepContext) -> None:
        """Best effort: a failing stop command never changes the job's status."""
        assert service.stop is not None
        # the run's cancel signal must not abort the cleanup itself
        cleanup_ctx = StepContext(
            job=ctx.job,
            repo_root=ctx.repo_root,
            cancel_event=threading.Event(),
            env=ctx.env,
            grace_period=ctx.grace_period,
        )
        try:
            result = self.executor.run(service.stop, cleanup_ctx)
        except Exception as e:
            self.console.print_debug(f"[{job.name}] stopping {service.name} failed: {e}")
            return
        if result.exit_code != 0:
            self.console.print_debug(
                f"[{job.name}] stopping {service.name} exited {result.exit_code}"
            )
