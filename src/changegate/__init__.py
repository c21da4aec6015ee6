from .dsl import (
    JobBuilder,
    all_of,
    always,
    any_of,
    branch_is,
    build,
    category,
    changed,
    event_is,
    job,
    not_,
    repository_is,
    service,
    sh,
    wf,
)
from .model import Category, Event, Job, JobStatus, RunGraph, Step, Workflow
from .paths import classify
from .runner import load_workflow, run_pipeline

__all__ = [
    "JobBuilder", "all_of", "always", "any_of", "branch_is", "build", "category",
    "changed", "event_is", "job", "not_", "repository_is", "service", "sh", "wf",
    "Category", "Event", "Job", "JobStatus", "RunGraph", "Step", "Workflow",
    "classify", "load_workflow", "run_pipeline",
]
