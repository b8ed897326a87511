"""Console output formatting utilities for releaseci."""

from __future__ import annotations

import sys
from typing import Callable, Iterable, Optional


class Console:
    """Centralized console output formatting. Every line passes the secret masker."""

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show step output and stack traces
        """
        self.debug = debug
        self._out = stream
        self._err = err_stream
        self._mask: Callable[[str], str] = lambda s: s

    def set_masker(self, masker: Optional[Callable[[str], str]]) -> None:
        """Install the run's secret masker (None restores passthrough)."""
        self._mask = masker or (lambda s: s)

    def _print(self, text: str = "", *, err: bool = False) -> None:
        stream = (self._err or sys.stderr) if err else (self._out or sys.stdout)
        print(self._mask(text), file=stream)

    def print_header(self, title: str) -> None:
        self._print(f"\n{title}")
        self._print("-" * len(title))

    def print_run_started(self, workflow: str, ref: str, sha: Optional[str], run_id: str) -> None:
        """Print run start information."""
        self._print("\nRUN STARTED")
        self._print(f"Workflow: {workflow}")
        self._print(f"Ref: {ref}")
        if sha:
            self._print(f"Commit: {sha}")
        self._print(f"Run ID: {run_id}")
        self._print()

    def print_trigger_skipped(self, ref: str, patterns: Iterable[str]) -> None:
        self._print(f"TRIGGER: no match for {ref} (patterns: {', '.join(patterns)}); nothing to do")

    def print_tool(self, name: str, action: str, detail: str = "") -> None:
        line = f"TOOL: {name} ({action})"
        if detail:
            line += f" {detail}"
        self._print(line)

    def print_job_start(self, name: str) -> None:
        self._print(f"\nJOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        self._print(f"STEP: {name}")

    def print_step_skipped(self, name: str) -> None:
        self._print(f"STEP SKIPPED: {name}")

    def print_step_output(self, stdout: str, stderr: str) -> None:
        """Step output is only echoed in debug mode; it is always kept in the run log."""
        if not self.debug:
            return
        for line in (stdout or "").splitlines():
            self._print(f"  | {line}")
        for line in (stderr or "").splitlines():
            self._print(f"  ! {line}")

    def print_retry(self, name: str, attempt: int, exit_code: int, delay: float) -> None:
        self._print(f"RETRY: {name} (attempt {attempt} exited {exit_code}, waiting {delay:.1f}s)")

    def print_success(self, name: str) -> None:
        self._print(f"STEP OK: {name}")

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
        self._print(f"{prefix}: {name}")
        if exit_code is not None:
            self._print(f"Exit code: {exit_code}")
        if hint:
            self._print(f"Hint: {hint}")
        if self.debug:
            self._print(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._print(f"Error: {error_line}")

    def print_plan_step(self, job: str, step: str, note: str = "") -> None:
        self._print(f"  {job} :: {step}" + (f" ({note})" if note else ""))

    def print_results(self, status: str, results: list) -> None:
        """Print final results summary. `results` is a list of StepResult."""
        self._print("\n" + "=" * 40)
        self._print("RESULTS")
        self._print("=" * 40)
        for r in results:
            code = "" if r.exit_code is None else f" (exit={r.exit_code})"
            self._print(f"  {r.job} :: {r.name}: {r.status.value.upper()}{code}")
        self._print(f"RUN: {status.upper()}")

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
        self._print(message, err=True)
        if details:
            for detail in details:
                self._print(f"  {detail}", err=True)
        if suggestion:
            self._print(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._print(text.rstrip(), err=True)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


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
