"""Console output formatting utilities for changegate."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Mapping, Optional

from ..model import JobReport, JobStatus


STATUS_LABELS = {
    JobStatus.SUCCEEDED: "SUCCESS",
    JobStatus.FAILED: "FAILED",
    JobStatus.SKIPPED: "SKIPPED",
    JobStatus.BLOCKED: "BLOCKED",
    JobStatus.CANCELLED: "CANCELLED",
    JobStatus.PENDING: "PENDING",
    JobStatus.RUNNING: "RUNNING",
}


class Console:
    """Centralized console output formatting."""
    
    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.
        
        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)
    
    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))
    
    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        group: str,
        event: str,
        job_count: int,
        changed_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Group: {group}",
            f"Event: {event}",
            f"Changed files: {changed_count}",
            f"Jobs: {job_count}",
            "",
        )

    def print_categories(self, flags: Mapping[str, bool]) -> None:
        """Print category flags computed from the change set."""
        self.print_header("CATEGORIES")
        for name, value in flags.items():
            self._emit(f"  {name}: {'true' if value else 'false'}")
    
    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name}")
    
    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._emit(f"[{job}] STEP SKIPPED: {name}")
    
    def print_job_finished(self, name: str, status: JobStatus, reason: str = "") -> None:
        suffix = f" ({reason})" if reason else ""
        self._emit(f"[{name}] STATUS: {status.value}{suffix}")

    def print_service_wait(self, job: str, service: str) -> None:
        self._emit(f"[{job}] SERVICE: waiting for {service}")

    def print_service_ready(self, job: str, service: str, attempts: int, elapsed: float) -> None:
        self._emit(f"[{job}] SERVICE: {service} ready after {attempts} probe(s), {elapsed:.1f}s")
    
    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.
        
        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_cancelled(self, run_id: str, jobs: Iterable[str]) -> None:
        jobs = list(jobs)
        self._emit(f"\nRUN CANCELLED: {run_id} (superseded)")
        if jobs:
            self._emit(f"  cancelled: {', '.join(jobs)}")
    
    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._emit(f"  ✓ {name} ({reason})")
    
    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._emit(f"  ⏭ {name} (skipped: {reason})")
    
    def print_results(self, reports: Iterable[JobReport]) -> None:
        """Print final results summary, with output of failed steps."""
        reports = list(reports)
        self._emit("\n" + "=" * 40, "RESULTS", "=" * 40)
        for rep in reports:
            extra = f" - {rep.reason}" if rep.reason else ""
            self._emit(f"  {rep.name}: {STATUS_LABELS[rep.status]}{extra}")

        for rep in reports:
            if rep.status is not JobStatus.FAILED:
                continue
            title = f"{rep.name} / {rep.failed_step}" if rep.failed_step else rep.name
            self.print_header(f"OUTPUT: {title}")
            self._emit(rep.output.rstrip() if rep.output else "(no output)")
    
    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.
        
        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)
    
    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)
    
    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)
    
    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
