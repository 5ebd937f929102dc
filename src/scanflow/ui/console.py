"""Console output formatting utilities for scanflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from scanflow.model import JobResult, RunReport


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every print goes through one lock to keep
    lines from different jobs from interleaving.
    """

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        pipeline: str,
        target: Optional[str],
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Target: {target or '(per step)'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, waves: List[List[str]]) -> None:
        """Print the schedule as waves of jobs that may run together."""
        lines = ["PLAN"]
        for idx, wave in enumerate(waves, start=1):
            lines.append(f"  {idx}. {', '.join(wave)}")
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_findings(self, job: str, step: str, exit_code: int) -> None:
        """Print a severity gate that tripped. This is a detection, not a failure."""
        self._out(f"[{job}] FINDINGS: '{step}' exited {exit_code} (vulnerabilities above threshold)")

    def print_route(self, job: str, kind: str, reason: str) -> None:
        self._out(f"[{job}] ROUTE: {kind} ({reason})")

    def print_cache_wait(self, job: str, key: str) -> None:
        self.print_debug(f"[{job}] waiting for shared cache '{key}'")

    def print_cache_hit(self, job: str, key: str, reason: Optional[str] = None) -> None:
        suffix = f" ({reason})" if reason else ""
        self._out(f"[{job}] CACHE: using shared '{key}'{suffix}")

    def print_cache_saved(self, job: str, key: str, version: Optional[str]) -> None:
        self._out(f"[{job}] CACHE: populated '{key}' (version {version or 'unknown'})")

    def print_degraded(self, job: str, message: str) -> None:
        """Print a degraded-mode event: slower but still correct."""
        self._out(f"WARNING (degraded) [{job}]: {message}", err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_job_result(self, result: "JobResult") -> None:
        """Print job termination."""
        lines = [f"JOB FINISHED: {result.name} -> {result.outcome.value} ({result.duration:.1f}s)"]
        if result.error:
            if self.debug:
                lines.append(f"Error details: {result.error}")
            else:
                lines.append(f"Error: {result.error.splitlines()[0]}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_report(self, report: "RunReport") -> None:
        """
        Print the final run summary. Jobs that found vulnerabilities and jobs
        that could not complete are listed separately.
        """
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        sections = [
            ("Clean", report.clean),
            ("Found vulnerabilities", report.findings_detected),
            ("Could not complete", report.could_not_complete),
            ("Skipped", sorted(report.skipped)),
        ]
        for title, names in sections:
            if not names:
                continue
            lines.append(f"{title}:")
            for name in names:
                detail = ""
                if name in report.skipped:
                    detail = f" ({report.skipped[name]})"
                elif name in report.bundles:
                    detail = f" -> {report.bundles[name].bundle}"
                lines.append(f"  {name}{detail}")
        if report.degraded:
            lines.append("Degraded:")
            lines.extend(f"  {d}" for d in report.degraded)
        lines.append(f"Status: {'success' if report.succeeded else 'failed'}")
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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
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
