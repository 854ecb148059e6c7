"""Console output formatting utilities for ciforge."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ciforge.dag import DependencyGraph
    from ciforge.model import JobResult, RunContext, StepOutcome
    from ciforge.report import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress (report and errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report progress from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        context: Optional["RunContext"] = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
        ]
        if context is not None:
            lines.append(f"Event: {context.event.value}")
            lines.append(f"Branch: {context.branch}")
            if context.sha:
                lines.append(f"Commit: {context.sha[:12]}")
        self._out(*lines, "")

    def print_job_start(self, job_id: str) -> None:
        self._progress(f"JOB STARTED: {job_id}")

    def print_step(self, job_id: str, step: str) -> None:
        self._progress(f"[{job_id}] STEP: {step}")

    def print_step_failed(self, job_id: str, outcome: "StepOutcome") -> None:
        """Print a failed step; tolerated failures are marked as such."""
        label = "STEP FAILED (continue-on-error)" if outcome.continued else "STEP FAILED"
        lines = [f"[{job_id}] {label}: {outcome.name}"]
        if outcome.exit_code is not None:
            lines.append(f"[{job_id}] Exit code: {outcome.exit_code}")
        if outcome.error:
            if self.debug:
                lines.append(f"[{job_id}] Error details: {outcome.error}")
            else:
                lines.append(f"[{job_id}] Error: {outcome.error.splitlines()[0]}")
        self._progress(*lines)

    def print_cache(self, job_id: str, message: str) -> None:
        self._progress(f"[{job_id}] CACHE: {message}")

    def print_job_finished(self, result: "JobResult") -> None:
        duration = result.duration
        suffix = f" ({duration:.1f}s)" if duration is not None else ""
        self._progress(f"[{result.job_id}] STATUS: {result.status.value}{suffix}")

    def print_job_skipped(self, job_id: str, reason: str) -> None:
        self._progress(f"[{job_id}] STATUS: skipped ({reason})")

    def print_job_cancelled(self, job_id: str, reason: str) -> None:
        self._progress(f"[{job_id}] STATUS: cancelled ({reason})")

    def print_plan(self, graph: "DependencyGraph") -> None:
        """Print the stage plan: instances grouped by topological level."""
        self.print_header("PLAN")
        for idx, level in enumerate(graph.levels(), start=1):
            self._out(f"Stage {idx}:")
            for instance_id in level:
                inst = graph.instance(instance_id)
                needs = f" (needs: {', '.join(inst.job.needs)})" if inst.job.needs else ""
                cond = f" if: {inst.job.condition}" if inst.job.condition else ""
                self._out(f"  {instance_id}{needs}{cond}")

    def print_report(self, report: "RunReport") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40, "RESULTS", "=" * 40)
        for result in report.results:
            self._out(f"  {result.job_id}: {result.status.value.upper()}")
        for failure in report.failures():
            self._out("", f"FAILED: {failure.job_id}")
            if failure.step:
                self._out(f"  Step: {failure.step}")
            if failure.error:
                self._out(f"  Error: {failure.error}")
            if failure.output:
                tail: List[str] = failure.output.rstrip().splitlines()[-20:]
                self._out("  Output:", *(f"    {line}" for line in tail))
        self._out("", f"RUN STATUS: {report.status.value.upper()}")

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
