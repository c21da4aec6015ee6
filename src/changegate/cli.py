# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from changegate import settings
from changegate.concurrency import group_key
from changegate.dag import JobGraph
from changegate.errors import WorkflowError
from changegate.executor import ShellExecutor
from changegate.git_facts.git import current_ref
from changegate.model import EVENT_KINDS, Event, JobStatus, Workflow
from changegate.paths import classify, relevant_paths
from changegate.runner import (
    accepts,
    detect_changed_files,
    load_workflow,
    make_event,
    read_changed_files,
    run_pipeline,
)
from changegate.scheduler import plan as plan_jobs
from changegate.server import PipelineServer
from changegate.ui.console import Console, set_console, get_console

# exit code for workflow load / validation errors
EXIT_INVALID_WORKFLOW = 2


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the argument or the configured default.

    Raises:
        SystemExit: If the workflow file cannot be found
    """
    console = get_console()
    workflow_path = Path(workflow_arg or settings.WORKFLOW_FILE)
    if not workflow_path.exists() and workflow_path.suffix != ".py":
        workflow_path = Path(str(workflow_path) + ".py")
    if not workflow_path.exists():
        console.print_error(
            "Workflow file not found",
            f"Could not find workflow file: {workflow_path}",
            suggestion="Create changegate_workflow.py or specify a path:\n  changegate run --workflow my_workflow.py",
        )
        sys.exit(1)
    return workflow_path


def _load(ctx, workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e), details=[str(workflow_path)])
        sys.exit(EXIT_INVALID_WORKFLOW)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[f"{type(e).__name__}: {e}"],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_INVALID_WORKFLOW)


def _event_from_options(kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref) -> Event:
    console = get_console()

    if not ref:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref given and the current git ref is unknown.",
                suggestion="Specify --ref explicitly:\n  changegate run --ref refs/heads/main",
            )
            sys.exit(1)

    files = list(changed_file)
    if changed_files_from:
        files.extend(read_changed_files(changed_files_from))
    if not changed_file and not changed_files_from:
        try:
            files = detect_changed_files(compare_ref)
            console.print_debug(f"git diff against {compare_ref}: {len(files)} file(s)")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not compute changed files",
                "No --changed-file given and git diff failed.",
                suggestion="Pass the change set explicitly:\n  changegate run --changed-file src/lib.rs",
            )
            sys.exit(1)

    return make_event(
        kind,
        ref,
        files,
        head_ref=head_ref,
        base_ref=base_ref,
        repository=repository,
    )


def event_options(fn):
    """Options describing the triggering event, shared by every command."""
    options = [
        click.option("--event", "kind", type=click.Choice(EVENT_KINDS), default="push", show_default=True, help="Event kind"),
        click.option("--ref", default=None, help="Git ref of the event (defaults to the current ref)"),
        click.option("--head-ref", default=None, help="Pull request source branch"),
        click.option("--base-ref", default=None, help="Pull request target branch"),
        click.option("--repository", default=None, help="Repository slug, e.g. owner/name"),
        click.option("--changed-file", multiple=True, help="A changed path (repeatable)"),
        click.option("--changed-files-from", type=click.Path(exists=True, dir_okay=False), default=None, help="File with one changed path per line"),
        click.option("--compare-ref", default=settings.COMPARE_REF, show_default=True, help="Git ref to diff against when no files are given"),
        click.option("--workflow", default=None, help="Workflow file path (defaults to changegate_workflow.py)"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """changegate: change-scoped CI job gating."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel workers")
@click.option("--grace", default=settings.GRACE_SECONDS, type=float, show_default=True, help="Seconds a cancelled step gets before it is killed")
@click.pass_context
def run(ctx, kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref, workflow, workers, grace):
    """Run the workflow for an event."""
    console = get_console()
    wf = _load(ctx, workflow)
    event = _event_from_options(kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref)

    if not accepts(wf, event):
        console.print_info(f"Workflow '{wf.name}' does not run on {event.kind} to {event.ref}; nothing to do.")
        return

    try:
        result = run_pipeline(
            wf,
            event,
            executor=ShellExecutor(output_tail=settings.OUTPUT_TAIL),
            repo_root=".",
            max_workers=workers,
            grace_period=grace,
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result.reports())
    if result.exit_code != 0:
        sys.exit(result.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to changegate_workflow.py)")
@click.option("--events", type=click.File("r", encoding="utf-8"), default="-", show_default=True, help="File with one JSON event per line ('-' for stdin)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel workers per run")
@click.option("--grace", default=settings.GRACE_SECONDS, type=float, show_default=True, help="Seconds a cancelled step gets before it is killed")
@click.pass_context
def serve(ctx, workflow, events, workers, grace):
    """Run a stream of events; newer events cancel superseded runs."""
    console = get_console()
    wf = _load(ctx, workflow)
    server = PipelineServer(
        wf,
        executor=ShellExecutor(output_tail=settings.OUTPUT_TAIL),
        repo_root=".",
        max_workers=workers,
        grace_period=grace,
        console=console,
    )

    try:
        runs = server.serve(events)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    for result in runs:
        console.print_header(f"RUN {result.run_id} ({result.group})")
        console.print_results(result.reports())
    if any(result.exit_code != 0 for result in runs):
        sys.exit(1)


@cli.command()
@event_options
@click.pass_context
def plan(ctx, kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref, workflow):
    """Show which jobs would run, without running anything."""
    console = get_console()
    wf = _load(ctx, workflow)
    event = _event_from_options(kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref)

    console.print_info(f"Group: {group_key(wf, event)}")
    if not accepts(wf, event):
        console.print_info(f"Workflow '{wf.name}' does not run on {event.kind} to {event.ref}.")
        return

    flags = classify(event.changed_files, wf.categories)
    console.print_categories(flags)
    console.print_header("PLAN")
    for planned in plan_jobs(JobGraph(wf.jobs, wf.categories), flags, event):
        if planned.status is JobStatus.SUCCEEDED:
            console.print_plan_job(planned.name, planned.reason)
        else:
            console.print_plan_job_skipped(planned.name, f"{planned.status.value}, {planned.reason}")


@cli.command("classify")
@event_options
@click.pass_context
def classify_cmd(ctx, kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref, workflow):
    """Print the category flags for a change set."""
    console = get_console()
    wf = _load(ctx, workflow)
    event = _event_from_options(kind, ref, head_ref, base_ref, repository, changed_file, changed_files_from, compare_ref)

    flags = classify(event.changed_files, wf.categories)
    console.print_categories(flags)
    for cat in wf.categories:
        for path in relevant_paths(event.changed_files, cat):
            console.print_debug(f"{cat.name}: {path}")


if __name__ == "__main__":
    cli()
