from __future__ import annotations

import threading

import pytest

from changegate.dag import JobGraph
from changegate.dsl import category, changed, event_is, job, service, sh, wf
from changegate.errors import ServiceTimeoutError
from changegate.model import Event, JobStatus, RunGraph
from changegate.paths import classify
from changegate.scheduler import Scheduler, plan

from conftest import FakeExecutor


CATEGORIES = [
    category("non-js", ignore=["app/**"]),
    category("non-rust", ignore=["src/**"]),
]


def make_run(workflow, files=("src/lib.rs",), kind="push", ref="refs/heads/main"):
    event = Event(kind=kind, ref=ref, changed_files=tuple(files))
    return RunGraph(workflow, event, classify(event.changed_files, workflow.categories), group="test")


def schedule(workflow, executor, **run_kwargs):
    run = make_run(workflow, **run_kwargs)
    graph = JobGraph(workflow.jobs, workflow.categories)
    Scheduler(graph, executor, max_workers=4, grace_period=0.1).schedule(run)
    return run


def test_backend_change_runs_backend_and_skips_frontend(fake_executor):
    workflow = wf(
        job("backend", sh("test", "cargo test"), when=changed("non-js")),
        job("frontend", sh("test", "pnpm test"), when=changed("non-rust")),
        categories=CATEGORIES,
    )
    run = schedule(workflow, fake_executor, files=["src/lib.rs"])
    assert run.statuses() == {"backend": JobStatus.SUCCEEDED, "frontend": JobStatus.SKIPPED}
    assert fake_executor.calls == [("backend", "test")]


def test_failed_dependency_blocks_dependent():
    executor = FakeExecutor(exit_codes={"false": 1}, outputs={"false": "boom\n"})
    workflow = wf(
        job("a", sh("fail", "false"), sh("never", "echo unreachable")),
        job("b", sh("b-step", "echo b"), needs=["a"]),
        job("c", sh("c-step", "echo c")),
    )
    run = schedule(workflow, executor)

    assert run.statuses() == {
        "a": JobStatus.FAILED,
        "b": JobStatus.BLOCKED,
        "c": JobStatus.SUCCEEDED,
    }
    assert ("b", "b-step") not in executor.calls
    assert ("a", "never") not in executor.calls

    rep = run.report("a")
    assert rep.failed_step == "fail"
    assert rep.exit_code == 1
    assert rep.output == "boom\n"
    assert "needs a (failed)" in run.report("b").reason
    assert run.exit_code == 1


def test_blocked_propagates_down_the_chain():
    executor = FakeExecutor(exit_codes={"false": 1})
    workflow = wf(
        job("a", sh("fail", "false")),
        job("b", sh("b", "echo b"), needs=["a"]),
        job("c", sh("c", "echo c"), needs=["b"]),
    )
    run = schedule(workflow, executor)
    assert run.status("b") is JobStatus.BLOCKED
    assert run.status("c") is JobStatus.BLOCKED


def test_skipped_dependency_blocks_unless_dependent_is_skipped_too(fake_executor):
    workflow = wf(
        job("frontend", sh("t", "pnpm test"), when=changed("non-rust")),
        job("after-frontend", sh("t", "deploy"), needs=["frontend"]),
        job("frontend-report", sh("t", "report"), needs=["frontend"], when=changed("non-rust")),
        categories=CATEGORIES,
    )
    run = schedule(workflow, fake_executor, files=["src/lib.rs"])
    assert run.statuses() == {
        "frontend": JobStatus.SKIPPED,
        "after-frontend": JobStatus.BLOCKED,
        "frontend-report": JobStatus.SKIPPED,
    }
    assert fake_executor.calls == []


def test_skipped_wins_over_blocked():
    executor = FakeExecutor(exit_codes={"false": 1})
    workflow = wf(
        job("a", sh("fail", "false")),
        job("b", sh("b", "echo b"), needs=["a"], when=event_is("pull_request")),
    )
    run = schedule(workflow, executor)
    assert run.status("b") is JobStatus.SKIPPED


def test_ordering_only_dependency_never_blocks():
    executor = FakeExecutor(exit_codes={"false": 1})
    workflow = wf(
        job("a", sh("fail", "false")),
        job("b", sh("b", "echo b"), after=["a"]),
    )
    run = schedule(workflow, executor)
    assert run.status("b") is JobStatus.SUCCEEDED
    assert executor.calls.index(("a", "fail")) < executor.calls.index(("b", "b"))


def test_job_waits_for_its_dependencies(fake_executor):
    workflow = wf(
        job("build", sh("build", "make")),
        job("test", sh("test", "make test"), needs=["build"]),
        job("deploy", sh("deploy", "make deploy"), needs=["test"]),
    )
    run = schedule(workflow, fake_executor)
    assert fake_executor.calls == [("build", "build"), ("test", "test"), ("deploy", "deploy")]
    assert all(s is JobStatus.SUCCEEDED for s in run.statuses().values())
    assert run.exit_code == 0


def test_step_level_predicate_skips_only_that_step(fake_executor):
    workflow = wf(
        job(
            "frontend",
            sh("install", "pnpm install"),
            sh("percy", "pnpm percy exec", when=event_is("pull_request")),
            sh("test", "pnpm test"),
        ),
    )
    run = schedule(workflow, fake_executor)
    assert run.status("frontend") is JobStatus.SUCCEEDED
    assert fake_executor.commands() == ["install", "test"]


def test_executor_exception_fails_the_job():
    class Exploding:
        def run(self, step, ctx):
            raise FileNotFoundError("cwd not found")

    workflow = wf(job("a", sh("x", "true")), job("b", sh("y", "true"), needs=["a"]))
    run = schedule(workflow, Exploding())
    assert run.status("a") is JobStatus.FAILED
    assert "cwd not found" in run.report("a").reason
    assert run.status("b") is JobStatus.BLOCKED


def test_every_job_is_terminal_when_done():
    executor = FakeExecutor(exit_codes={"false": 1})
    workflow = wf(
        job("a", sh("a", "false")),
        job("b", sh("b", "true"), needs=["a"]),
        job("c", sh("c", "true"), when=changed("non-rust")),
        job("d", sh("d", "true"), needs=["c"], after=["b"]),
        categories=CATEGORIES,
    )
    run = schedule(workflow, executor, files=["src/lib.rs"])
    assert run.complete
    assert run.done_event.is_set()
    assert all(s.terminal for s in run.statuses().values())


def test_run_cancelled_before_start_runs_nothing(fake_executor):
    workflow = wf(job("a", sh("a", "true")), job("b", sh("b", "true"), needs=["a"]))
    run = make_run(workflow)
    run.cancel()
    Scheduler(JobGraph(workflow.jobs), fake_executor).schedule(run)
    assert run.statuses() == {"a": JobStatus.CANCELLED, "b": JobStatus.CANCELLED}
    assert fake_executor.calls == []
    assert run.exit_code == 0


def test_cancellation_stops_in_flight_job_and_pending_dependents():
    executor = FakeExecutor(blocking={"sleep"})
    workflow = wf(job("a", sh("long", "sleep")), job("b", sh("b", "true"), needs=["a"]))
    run = make_run(workflow)
    scheduler = Scheduler(JobGraph(workflow.jobs), executor)

    t = threading.Thread(target=scheduler.schedule, args=(run,))
    t.start()
    assert executor.started("sleep").wait(5)
    assert run.status("a") is JobStatus.RUNNING

    run.cancel()
    t.join(5)
    assert not t.is_alive()
    assert run.statuses() == {"a": JobStatus.CANCELLED, "b": JobStatus.CANCELLED}
    assert ("b", "b") not in executor.calls


# ----------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------

def test_service_timeout_fails_the_job(fake_executor):
    db = service("postgres", probe=lambda: False, interval=0.01, timeout=0.05)
    workflow = wf(
        job("backend-test", sh("test", "cargo test"), service=db),
        job("report", sh("r", "true"), needs=["backend-test"]),
    )
    run = schedule(workflow, fake_executor)
    assert run.status("backend-test") is JobStatus.FAILED
    assert "postgres" in run.report("backend-test").reason
    assert run.status("report") is JobStatus.BLOCKED
    assert fake_executor.calls == []


def test_service_timeout_error_describes_the_wait():
    err = ServiceTimeoutError(job="backend-test", service="postgres", attempts=5, elapsed=50.0)
    assert str(err) == "[backend-test] service 'postgres' not healthy after 5 probe(s) in 50.0s"


def test_service_gate_runs_steps_once_healthy(fake_executor):
    probes = iter([False, False, True])
    db = service(
        "postgres",
        probe=lambda: next(probes),
        interval=0.01,
        timeout=5,
        start="docker run postgres",
        stop="docker rm -f postgres",
    )
    workflow = wf(job("backend-test", sh("test", "cargo test"), service=db))
    run = schedule(workflow, fake_executor)
    assert run.status("backend-test") is JobStatus.SUCCEEDED
    assert fake_executor.commands() == ["Start postgres", "test", "Stop postgres"]


def test_service_is_stopped_even_when_a_step_fails():
    executor = FakeExecutor(exit_codes={"cargo test": 101})
    db = service("postgres", probe=lambda: True, interval=0.01, stop="docker rm -f postgres")
    workflow = wf(job("backend-test", sh("test", "cargo test"), service=db))
    run = schedule(workflow, executor)
    assert run.status("backend-test") is JobStatus.FAILED
    assert executor.commands()[-1] == "Stop postgres"


def test_failing_service_start_fails_the_job():
    executor = FakeExecutor(exit_codes={"docker run postgres": 125})
    db = service("postgres", probe=lambda: True, start="docker run postgres")
    workflow = wf(job("backend-test", sh("test", "cargo test"), service=db))
    run = schedule(workflow, executor)
    assert run.status("backend-test") is JobStatus.FAILED
    assert run.report("backend-test").failed_step == "Start postgres"
    assert ("backend-test", "test") not in executor.calls


# ----------------------------------------------------------------------
# Plan
# ----------------------------------------------------------------------

def test_plan_reports_decisions_without_running():
    workflow = wf(
        job("backend", sh("t", "cargo test"), when=changed("non-js")),
        job("frontend", sh("t", "pnpm test"), when=changed("non-rust")),
        job("deploy", sh("t", "deploy"), needs=["frontend"]),
        categories=CATEGORIES,
    )
    run = make_run(workflow, files=["app/templates/foo.hbs"])
    planned = plan(JobGraph(workflow.jobs, workflow.categories), run.flags, run.event)
    assert [(p.name, p.status) for p in planned] == [
        ("backend", JobStatus.SKIPPED),
        ("frontend", JobStatus.SUCCEEDED),
        ("deploy", JobStatus.SUCCEEDED),
    ]


@pytest.mark.parametrize("files, expected", [
    (["src/lib.rs"], JobStatus.BLOCKED),
    (["app/app.js"], JobStatus.SUCCEEDED),
])
def test_plan_blocks_behind_skipped_jobs(files, expected):
    workflow = wf(
        job("frontend", sh("t", "pnpm test"), when=changed("non-rust")),
        job("deploy", sh("t", "deploy"), needs=["frontend"]),
        categories=CATEGORIES,
    )
    run = make_run(workflow, files=files)
    planned = {p.name: p.status for p in plan(JobGraph(workflow.jobs), run.flags, run.event)}
    assert planned["deploy"] is expected
