# concurrency.py
"""
One active run per concurrency group.

The registry is the only state shared between invocations. It is owned by
whoever builds the ConcurrencyArbiter and every admit/cancel/replace sequence
runs under its lock, so two runs are never active for the same key. Waiting
for a superseded run happens after the lock is released.
"""
from __future__ import annotations

import threading
from typing import Dict, List, Optional

from .dag import JobGraph
from .model import Event, RunGraph, Workflow
from .paths import classify
from .ui.console import Console, get_console


class RunRegistry:
    """Mutex-guarded map: group key -> active RunGraph."""

    def __init__(self):
        self.lock = threading.RLock()
        self._active: Dict[str, RunGraph] = {}
        self.archived: List[RunGraph] = []

    def get(self, key: str) -> Optional[RunGraph]:
        with self.lock:
            return self._active.get(key)

    def put(self, key: str, run: RunGraph) -> None:
        with self.lock:
            self._active[key] = run

    def remove(self, key: str, run: RunGraph) -> bool:
        """Drop `run` if it is still the active run for `key`."""
        with self.lock:
            if self._active.get(key) is run:
                del self._active[key]
                self.archived.append(run)
                return True
            return False

    def active_keys(self) -> List[str]:
        with self.lock:
            return sorted(self._active)


def group_key(workflow: Workflow, event: Event) -> str:
    """`<workflow>-<head ref or ref>`: pull requests group by their branch."""
    return f"{workflow.name}-{event.head_ref or event.ref}"


class ConcurrencyArbiter:
    """
    Admits events into runs.

    Admitting an event for a key that already has an active run cancels that
    run (all non-terminal jobs become Cancelled and in-flight steps get the
    signal) and registers the new run under the registry lock. It then waits
    up to `grace_period` for the old run to wind down, without holding the
    lock. The old run's leftovers are not waited for beyond that.
    """

    def __init__(
        self,
        workflow: Workflow,
        registry: RunRegistry,
        *,
        graph: JobGraph | None = None,
        grace_period: float = 10.0,
        console: Console | None = None,
    ):
        self.workflow = workflow
        self.graph = graph or JobGraph(workflow.jobs, workflow.categories)
        self.registry = registry
        self.grace_period = grace_period
        self.console = console or get_console()

    def key_for(self, event: Event) -> str:
        return group_key(self.workflow, event)

    def admit(self, event: Event) -> RunGraph:
        key = self.key_for(event)
        flags = classify(event.changed_files, self.workflow.categories)

        superseded = None
        with self.registry.lock:
            old = self.registry.get(key)
            if old is not None and not old.done_event.is_set():
                cancelled = old.cancel()
                self.console.print_cancelled(old.run_id, cancelled)
                superseded = old
            if old is not None:
                self.registry.remove(key, old)

            run = RunGraph(self.workflow, event, flags, group=key)
            self.registry.put(key, run)

        # registry lock released here
        if superseded is not None and not superseded.wait(self.grace_period):
            self.console.print_debug(
                f"run {superseded.run_id} did not stop within {self.grace_period}s, continuing"
            )
        return run

    def release(self, run: RunGraph) -> bool:
        """Archive a finished run if it is still its group's active run."""
        return self.registry.remove(run.group, run)
