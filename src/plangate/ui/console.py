"""Console output formatting utilities for plangate."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import Outcome
    from ..report import FinalVerdict, Report


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every write goes through one lock to keep
    lines from different jobs from interleaving mid-line.
    """

    def __init__(self, debug: bool = False, stream_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream_output: If False, step output is only kept for reports
        """
        self.debug = debug
        self.stream_output = stream_output
        self._lock = threading.Lock()

    def _out(self, text: str, *, err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n" + "-" * len(title))

    def print_run_started(self, workflow: str, trigger: str, job_count: int) -> None:
        """Print run start information."""
        self._out(f"\nRUN STARTED\nWorkflow: {workflow}\nTrigger: {trigger}\nJobs: {job_count}\n")

    def print_plan(self, name: str, summary: str, step_count: int, mode: str) -> None:
        self._out(f"\nPLAN: {name}" + (f" ({summary})" if summary else ""))
        self._out(f"Steps: {step_count}  Mode: {mode}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_gated(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_provision(self, job: str, how: str, attempt: int) -> None:
        self._out(f"[{job}] PROVISION: {how} (attempt {attempt})")

    def print_teardown(self, job: str, env_name: str) -> None:
        self._out(f"[{job}] TEARDOWN: {env_name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, step: str, line: str) -> None:
        if self.stream_output:
            self._out(f"[{job}:{step}] {line}")

    def print_step_outcome(self, job: str, step: str, outcome: Outcome) -> None:
        text = f"[{job}] {step}: {outcome.status.upper()}"
        if outcome.detail:
            text += f" ({outcome.detail})"
        self._out(text)

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
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out("\n".join(lines))

    def print_report(self, report: Report) -> None:
        counts = report.counts()
        self._out(
            f"\nREPORT: {report.name}  "
            + "  ".join(f"{k}={v}" for k, v in counts.items())
        )
        first = report.first_failure
        if first is not None:
            self.print_failure(first.name, first.outcome.detail, first.outcome.exit_code)
            for line in first.outcome.output_tail[-20:]:
                self._out(f"  | {line}")

    def print_results(self, verdict: FinalVerdict) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, result in verdict.results.items():
            status = result.outcome.status.upper()
            if result.gated:
                status = "SKIPPED (gated)"
            elif result.outcome.detail:
                status += f" ({result.outcome.detail})"
            if not result.blocking:
                status += " [non-blocking]"
            lines.append(f"  {name}: {status}")
        lines.append(f"VERDICT: {'SUCCESS' if verdict.success else 'FAILURE'}")
        self._out("\n".join(lines))

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

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
