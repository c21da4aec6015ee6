# server.py
from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional

from .concurrency import ConcurrencyArbiter, RunRegistry
from .dag import JobGraph
from .errors import ChangegateError
from .executor import StepExecutor
from .model import Event, RunGraph, Workflow
from .runner import accepts, event_from_dict
from .scheduler import Scheduler
from .ui.console import Console, get_console


class PipelineServer:
    """
    Long-lived runner for a stream of events.

    All events share one RunRegistry, so a newer event for a concurrency group
    cancels the run still in progress for that group. Each admitted run is
    scheduled on its own thread; `serve` returns once the input is exhausted
    and every run has finished.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        executor: StepExecutor | None = None,
        repo_root: str | Path = ".",
        max_workers: int | None = None,
        grace_period: float = 10.0,
        console: Console | None = None,
    ):
        self.workflow = workflow
        self.console = console or get_console()
        self.graph = JobGraph(workflow.jobs, workflow.categories)
        self.registry = RunRegistry()
        self.arbiter = ConcurrencyArbiter(
            workflow, self.registry, graph=self.graph, grace_period=grace_period, console=self.console
        )
        self.scheduler = Scheduler(
            self.graph,
            executor,
            repo_root=repo_root,
            max_workers=max_workers,
            grace_period=grace_period,
            console=self.console,
        )
        self.runs: List[RunGraph] = []
        self._threads: List[threading.Thread] = []

    def submit(self, event: Event) -> Optional[RunGraph]:
        """Admit `event` and start its run in the background."""
        if not accepts(self.workflow, event):
            self.console.print_info(
                f"Workflow '{self.workflow.name}' does not run on {event.kind} to {event.ref}; ignored."
            )
            return None

        run = self.arbiter.admit(event)
        self.console.print_run_started(
            workflow=self.workflow.name,
            run_id=run.run_id,
            group=run.group,
            event=f"{event.kind} {event.ref}",
            job_count=len(self.graph),
            changed_count=len(run.change_set),
        )
        self.console.print_categories(run.flags)

        thread = threading.Thread(target=self._execute, args=(run,), name=f"run-{run.run_id}", daemon=True)
        self.runs.append(run)
        self._threads.append(thread)
        thread.start()
        return run

    def _execute(self, run: RunGraph) -> None:
        try:
            self.scheduler.schedule(run)
        except Exception as e:
            self.console.print_exception(e)
        finally:
            self.arbiter.release(run)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every submitted run. False if some run is still going."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in list(self._threads):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in self._threads)

    def serve(self, lines: Iterable[str]) -> List[RunGraph]:
        """
        Read one JSON event per line and submit it.

        Blank lines are skipped; a malformed line is reported and the loop
        carries on with the next one.
        """
        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                event = event_from_dict(json.loads(line))
            except (ValueError, ChangegateError) as e:
                self.console.print_error("Invalid event", f"line {lineno}: {e}")
                continue
            self.submit(event)

        self.join()
        return list(self.runs)
