# runner.py
from __future__ import annotations

import fnmatch
import runpy
import subprocess
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from .concurrency import ConcurrencyArbiter, RunRegistry
from .dag import JobGraph
from .errors import WorkflowError
from .executor import StepExecutor
from .model import PULL_REQUEST, PUSH, Event, Job, RunGraph, Workflow, branch_of
from .scheduler import Scheduler
from .ui.console import Console, get_console
from .git_facts.git import (
    changed_files as changed_files_between,
    is_dirty,
    merge_base,
    repo_root as git_repo_root,
    tracked_files,
    working_tree_changes,
)


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...) (or JOBS = [Job, ...])

    The job graph is validated before returning, so a cyclic or dangling
    workflow never reaches the scheduler.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"changegate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]
    else:
        raise WorkflowError(
            f"{wf_path.name} defines neither workflow() nor WORKFLOW. "
            "Define workflow() -> Workflow, e.g. `return wf(job(...), categories=[...])`."
        )

    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        loaded = Workflow(name=wf_path.stem, jobs=loaded)
    if not isinstance(loaded, Workflow):
        raise WorkflowError(
            f"Workflow must be a Workflow or a List[Job], got {type(loaded).__name__}"
        )

    JobGraph(loaded.jobs, loaded.categories)
    return loaded


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------

def detect_changed_files(
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> List[str]:
    """
    Changed paths relative to the repo root.

      - dirty tree: staged, unstaged and untracked files
      - clean tree: HEAD against its merge-base with `compare_ref`,
        falling back to HEAD~1, then to every tracked file (first commit)
    """
    root = git_repo_root(cwd=cwd)

    if is_dirty(cwd=root):
        return working_tree_changes(cwd=root)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return changed_files_between(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        return tracked_files(cwd=root)


def read_changed_files(path: str | Path) -> List[str]:
    """One path per line; blank lines and surrounding whitespace ignored."""
    text = Path(path).read_text(encoding="utf-8")
    return [line.strip() for line in text.splitlines() if line.strip()]


def make_event(
    kind: str,
    ref: str,
    changed_files: Iterable[str],
    *,
    head_ref: str | None = None,
    base_ref: str | None = None,
    repository: str | None = None,
) -> Event:
    if kind == PULL_REQUEST and not head_ref:
        head_ref = branch_of(ref)
    return Event(
        kind=kind,
        ref=ref,
        changed_files=tuple(changed_files),
        head_ref=head_ref if kind == PULL_REQUEST else None,
        base_ref=base_ref,
        repository=repository,
    )


def event_from_dict(data: Mapping[str, Any]) -> Event:
    """
    Build an Event from a decoded JSON object, e.g.

        {"event": "pull_request", "ref": "refs/heads/ui", "base_ref": "main",
         "changed_files": ["app/index.js"]}

    `kind` is accepted as an alias of `event`; kind defaults to push.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"event must be a JSON object, got {type(data).__name__}")
    ref = data.get("ref")
    if not ref:
        raise ValueError("event is missing 'ref'")
    files = data.get("changed_files") or []
    if isinstance(files, str) or not all(isinstance(f, str) for f in files):
        raise ValueError("'changed_files' must be a list of paths")
    return make_event(
        data.get("event") or data.get("kind") or PUSH,
        ref,
        files,
        head_ref=data.get("head_ref"),
        base_ref=data.get("base_ref"),
        repository=data.get("repository"),
    )


def accepts(workflow: Workflow, event: Event) -> bool:
    """Trigger filter: pushes only count for the workflow's push branches."""
    if event.kind != PUSH or workflow.push_branches is None:
        return True
    branch = branch_of(event.ref)
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in workflow.push_branches)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    workflow: Workflow,
    event: Event,
    *,
    arbiter: ConcurrencyArbiter | None = None,
    executor: StepExecutor | None = None,
    repo_root: str | Path = ".",
    max_workers: int | None = None,
    grace_period: float = 10.0,
    console: Console | None = None,
) -> RunGraph:
    """Admit `event`, classify its change set and run the job graph."""
    console = console or get_console()
    graph = JobGraph(workflow.jobs, workflow.categories)
    if arbiter is None:
        arbiter = ConcurrencyArbiter(
            workflow, RunRegistry(), graph=graph, grace_period=grace_period, console=console
        )

    run = arbiter.admit(event)
    console.print_run_started(
        workflow=workflow.name,
        run_id=run.run_id,
        group=run.group,
        event=f"{event.kind} {event.ref}",
        job_count=len(graph),
        changed_count=len(run.change_set),
    )
    console.print_categories(run.flags)

    scheduler = Scheduler(
        graph,
        executor,
        repo_root=repo_root,
        max_workers=max_workers,
        grace_period=grace_period,
        console=console,
    )
    try:
        scheduler.schedule(run)
    finally:
        arbiter.release(run)
    return run
