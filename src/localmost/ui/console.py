"""Console output formatting for the localmost command."""

from __future__ import annotations

import sys
import traceback
from typing import Optional

from ..model import Job, JobResult, MatrixCombination, StepResult, StepStatus
from ..policy_cache import CachedPolicy
from ..runner import format_duration


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, verbose: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            verbose: If True, stream step output and live step status
        """
        self.debug = debug
        self.verbose = verbose

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, workflow_path: str, repository: str, job_count: int) -> None:
        """Print run start information."""
        print(f"Running workflow: {workflow_path}")
        print(f"Repository: {repository}")
        print(f"Jobs: {job_count}")
        print()

    # ---- jobs / steps ----
    def print_job_start(self, job: Job, matrix: MatrixCombination) -> None:
        suffix = ""
        if matrix:
            suffix = " (" + ", ".join(f"{k}={v}" for k, v in matrix.items()) + ")"
        kind = " (reusable workflow)" if job.is_reusable_call else ""
        print(f"\n▶ {job.display_name}{suffix}{kind}")

    def print_job_result(self, result: JobResult) -> None:
        """Step ledger of a finished job (non-verbose mode) plus skip reasons."""
        if not self.verbose:
            for step in result.steps:
                self.print_step_result(step)
        if result.status == "skipped" and result.reason:
            print(f"  ⏭ skipped: {result.reason}")

    def print_step_result(self, step: StepResult) -> None:
        print(f"  {format_step_status(step.status, step.name, step.duration)}")
        if step.status == "failure" and step.error:
            print(f"    Error: {step.error}")

    def print_step_status(self, name: str, status: StepStatus) -> None:
        """Live status callback; only used with --verbose."""
        if self.verbose:
            print(f"  {format_step_status(status, name)}")

    def print_output(self, line: str, stream: str) -> None:
        """Child output callback; only shown with --verbose."""
        if not self.verbose:
            return
        print(f"    {line}", file=sys.stderr if stream == "stderr" else sys.stdout)

    def print_note(self, message: str) -> None:
        print(f"  {message}")

    def print_summary(self, duration: str, passed: int, total: int, ok: bool) -> None:
        """Print final results summary."""
        print("\nSummary:")
        print(f"  Duration: {duration}")
        print(f"  Jobs: {passed}/{total} passed")
        print("\n✓ Workflow passed" if ok else "\n✗ Workflow failed")

    # ---- policy ----
    def print_policy(self, title: str, content: str) -> None:
        self.print_header(title)
        print(content.rstrip())

    def print_cached_policy(self, cached: CachedPolicy) -> None:
        state = "approved" if cached.approved else "pending approval"
        commit = f" at {cached.approved_at_commit[:12]}" if cached.approved_at_commit else ""
        print(f"  {cached.repository}: {state}{commit} (cached {cached.cached_at:%Y-%m-%d %H:%M})")

    # ---- generic ----
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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_warning(self, message: str) -> None:
        print(f"Warning: {message}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


def format_step_status(status: StepStatus, name: str, duration: float | None = None) -> str:
    timing = f" ({format_duration(duration)})" if duration else ""
    match status:
        case "success":
            return f"✓ {name}{timing}"
        case "failure":
            return f"✗ {name}{timing}"
        case "skipped":
            return f"○ {name} (skipped)"
        case "running":
            return f"● {name}..."
        case "pending":
            return f"  {name} (dry run)"
        case _:
            return f"  {name}"


# Global console instance (initialized by the CLI)
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
