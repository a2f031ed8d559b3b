"""Console output formatting utilities for yamlci."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional

from ..model import Status, WorkflowResult
from ..settings import OUTPUT_TAIL_CHARS


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: where to print (defaults to stdout at call time)
        """
        self.debug = debug
        self._stream = stream
        # jobs run on worker threads; keep each line whole
        self._lock = threading.Lock()

    def _print(self, text: str = "", *, err: bool = False) -> None:
        out = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}")
        self._print("-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        event: str,
        job_count: int,
        run_id: str,
    ) -> None:
        """Print run start information."""
        self._print("\nRUN STARTED")
        self._print(f"Workflow: {workflow}")
        self._print(f"Event: {event}")
        self._print(f"Run ID: {run_id}")
        self._print(f"Jobs: {job_count}")
        self._print()

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._print(f"\nJOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        self._print(f"STEP: {name}")

    def print_step_skipped(self, name: str) -> None:
        self._print(f"STEP SKIPPED: {name}")

    def print_job_finished(self, name: str, status: Status, duration: Optional[float] = None) -> None:
        line = f"JOB {status.value.upper()}: {name}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._print(line)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: str = "",
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: captured output; the tail is shown
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines: List[str] = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if output.strip():
            tail = output if len(output) <= OUTPUT_TAIL_CHARS else "..." + output[-OUTPUT_TAIL_CHARS:]
            lines.append("Output:")
            lines.extend(f"  {line}" for line in tail.rstrip().splitlines())
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._print("\n".join(lines))

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._print(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan(self, stages: List[List[str]]) -> None:
        """Print the stages jobs will run in."""
        for idx, stage in enumerate(stages, start=1):
            self._print(f"=== Stage {idx}: {', '.join(stage)} ===")

    def print_results(self, result: WorkflowResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, r in result.jobs.items():
            status_display = r.status.value.upper()
            if r.tolerated:
                status_display += " (continue-on-error)"
            if r.reason:
                status_display += f" ({r.reason})"
            lines.append(f"  {job}: {status_display}")
        lines.append(f"WORKFLOW: {result.status.value.upper()}")
        self._print("\n".join(lines))

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
        self._print(f"\nERROR: {title}", err=True)
        self._print(f"{message}", err=True)
        if details:
            for detail in details:
                self._print(f"  {detail}", err=True)
        if suggestion:
            self._print(f"\n{suggestion}", err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)


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
