"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional

from relayci.model import JobStatus, RunReport


class Console:
    """Centralized console output formatting.

    Worker threads print through the same instance, so every method emits
    whole lines under a lock and job-scoped lines carry a "[job]" prefix.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        job_count: int,
        group: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Run: {run_id}", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if group:
            lines.append(f"Concurrency group: {group}")
        self._out(*lines, "")

    def print_admission(self, run_id: str, group: str, admission: str) -> None:
        self._out(f"ADMISSION: {run_id} -> {admission} (group {group})")

    def print_trigger_skipped(self, event: str, ref: str) -> None:
        self._out(f"TRIGGER: no run for {event} on {ref!r} (filtered)")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print execution stages."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx} ===", *(f"  {name}" for name in level))

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] STEP: {step}")

    def print_step_failed(self, job: str, step: str, exit_code: Optional[int], output: str = "") -> None:
        lines = [f"[{job}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        if output:
            tail = output if self.debug else "\n".join(output.splitlines()[-20:])
            lines.extend(f"[{job}] | {line}" for line in tail.splitlines())
        self._out(*lines)

    def print_job_finished(self, name: str, status: JobStatus, reason: Optional[str] = None) -> None:
        line = f"[{name}] STATUS: {status.value}"
        if reason:
            line += f" ({reason})"
        self._out(line)

    def print_cache_hit(self, job: str, key: str, exact: bool) -> None:
        kind = "hit" if exact else "partial hit"
        self._out(f"[{job}] CACHE: {kind} ({key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({key})")

    def print_results(self, report: RunReport, verdict: str) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for result in report.results:
            line = f"  {result.id}: {result.status.value.upper()}"
            if result.reason:
                line += f" ({result.reason})"
            lines.append(line)
        lines.append(f"VERDICT: {verdict.upper()}")
        self._out(*lines)

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
