"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..aggregate import PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        job_count: int,
        run_id: str,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Repository: {repository}")
        print(f"Pipeline: {pipeline}")
        print(f"Run ID: {run_id}")
        print(f"Jobs: {job_count}")
        print()

    def print_not_triggered(self, pipeline: str, reason: str) -> None:
        print(f"\nNOT TRIGGERED: {pipeline}")
        print(f"Reason: {reason}")

    def print_plan_stage(self, index: int) -> None:
        print(f"\nStage {index}:")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        print(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        print(f"  {name} (skipped: {reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        error_type: Optional[str] = None,
    ) -> None:
        """Print one failed job."""
        print(f"JOB FAILED: {name}")
        if error_type:
            print(f"Error type: {error_type}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, status in result.jobs.items():
            print(f"  {job}: {status.value.upper()}")

        required = [c for c in result.checks if c.required]
        if required:
            print("\nREQUIRED CHECKS")
            for c in required:
                print(f"  {c.name}: {'PASS' if c.passed else 'FAIL'}")

        if result.failures:
            print()
            for f in result.failures:
                self.print_failure(f.job, f.reason or f.status.value, f.error_type)

        print(f"\nPIPELINE: {result.status.value.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
