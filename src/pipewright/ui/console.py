"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from pipewright.model import ErrorInfo, JobInstance


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines (the final
                   report and errors are still printed)
        """
        self.debug = debug
        self.quiet = quiet
        # progress lines come from worker threads
        self._lock = threading.Lock()

    def _out(self, line: str = "", *, err: bool = False) -> None:
        with self._lock:
            print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        ref: str,
        event: str,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Pipeline: {pipeline}")
        self._out(f"Workflow: {workflow}")
        self._out(f"Trigger: {event} {ref}")
        self._out(f"Jobs: {instance_count}")
        self._out()

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] STEP: {name}")

    def print_job_finished(self, name: str, status: str, error: "ErrorInfo | None" = None) -> None:
        if self.quiet:
            return
        self._out(f"JOB {status.upper()}: {name}")
        if error is not None:
            # first line only unless debugging
            message = error.message if self.debug else error.message.split("\n")[0]
            self._out(f"  {error.kind}: {message}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_plan(self, stages: list[list[str]], edges: Iterable[tuple[str, str]]) -> None:
        """Print the execution plan stage by stage."""
        for idx, stage in enumerate(stages, start=1):
            self._out(f"=== Stage {idx}: {', '.join(stage)} ===")
        edges = list(edges)
        if edges:
            self._out("\nEdges:")
            for src, dst in edges:
                self._out(f"  {src} -> {dst}")

    def print_results(self, instances: Iterable["JobInstance"], status: str, exit_code: int) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for inst in instances:
            line = f"  {inst.id}: {inst.state.value.upper()}"
            if inst.error is not None and inst.state.value in ("failed", "skipped"):
                message = inst.error.message if self.debug else inst.error.message.split("\n")[0]
                line += f" [{inst.error.kind}] {message}"
            self._out(line)
        self._out("-" * 40)
        self._out(f"RUN {status.upper()} (exit {exit_code})")

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
        self._out(f"\nERROR: {title}", err=True)
        self._out(f"{message}", err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
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
