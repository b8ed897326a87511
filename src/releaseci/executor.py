# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError, ReleaseError, RunCancelled, StepExecutionError
from .git import checkout_command
from .model import Job, Step, StepResult, StepStatus, WorkflowRun
from .secrets import SecretBroker
from .ui.console import get_console

TIMEOUT_EXIT_CODE = 124


class CancelToken:
    """Thread-safe cancel flag. Signal handlers call cancel(); the executor polls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class StepExecutor:
    """
    Runs a job's steps strictly in order, one subprocess at a time.

    Every step gets its own env dict built from an immutable base snapshot,
    so nothing a step sets can leak into the next one.
    """

    def __init__(
        self,
        *,
        repo_root: str | Path = ".",
        base_env: Optional[Mapping[str, str]] = None,
        secrets: Optional[SecretBroker] = None,
        cancel: Optional[CancelToken] = None,
        ref: str = "HEAD",
        sha: Optional[str] = None,
        output_tail: int = 4000,
        kill_grace: float = 5.0,
        poll_interval: float = 0.1,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.base_env = MappingProxyType(dict(os.environ if base_env is None else base_env))
        self.secrets = secrets or SecretBroker([])
        self.cancel = cancel or CancelToken()
        self.ref = ref
        self.sha = sha
        self.output_tail = output_tail
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Environment + command
    # ------------------------------------------------------------------

    def step_env(self, job: Job, step: Step) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(job.env or {})
        env.update(step.env or {})

        missing = [name for name in step.requires_env if not env.get(name)]
        if missing:
            raise ConfigurationError(
                f"step needs environment variable(s) that are not set: {', '.join(missing)}",
                job=job.name,
                step=step.name,
            )

        env.update(self.secrets.env_for(step.secrets, job=job.name, step=step.name))
        return env

    def command_for(self, step: Step) -> str:
        if step.kind == "checkout":
            data = step.data or {}
            return checkout_command(
                data.get("ref") or self.sha or self.ref,
                repo=data.get("repo"),
                path=data.get("path") or ".",
            )
        if step.kind == "shell":
            return step.run
        raise ConfigurationError(f"unknown step kind {step.kind!r}", step=step.name)

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _terminate(self, proc: subprocess.Popen) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            try:
                if os.name == "posix":
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except ProcessLookupError:
                pass

    def _spawn(self, cmd: str, cwd: Path, env: Dict[str, str], timeout: Optional[float]) -> Tuple[int, str, str, str]:
        """
        Run one attempt. Returns (exit code, stdout, stderr, outcome) where
        outcome is "exited", "timeout" or "cancelled".
        """
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=(os.name == "posix"),
        )
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                return proc.returncode, out or "", err or "", "exited"
            except subprocess.TimeoutExpired:
                if self.cancel.cancelled:
                    outcome = "cancelled"
                elif deadline is not None and time.monotonic() >= deadline:
                    outcome = "timeout"
                else:
                    continue
            self._terminate(proc)
            out, err = proc.communicate()
            code = TIMEOUT_EXIT_CODE if outcome == "timeout" else proc.returncode
            return code, out or "", err or "", outcome

    def _tail(self, text: str) -> str:
        return self.secrets.mask(text[-self.output_tail:] if self.output_tail else text)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_step(self, job: Job, step: Step) -> StepResult:
        """
        Run a single step, honouring its explicit retry policy.

        Raises StepExecutionError on a non-zero exit (even for non-blocking
        steps; run_job decides whether to halt) and RunCancelled when the
        cancel token fires mid-step.
        """
        if self.cancel.cancelled:
            raise RunCancelled("run cancelled before step started", job=job.name, step=step.name)

        env = self.step_env(job, step)
        cmd = self.command_for(step)
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise ConfigurationError(f"step cwd not found: {cwd}", job=job.name, step=step.name)
        get_console().print_debug(f"{job.name}/{step.name}: {self.secrets.mask(cmd)} (cwd={cwd})")

        started = time.monotonic()
        attempts = 0
        code, out, err, outcome = 0, "", "", "exited"

        for attempt in range(step.retries + 1):
            attempts += 1
            code, out, err, outcome = self._spawn(cmd, cwd, env, step.timeout)
            if code == 0 or outcome == "cancelled":
                break
            if attempt < step.retries:
                delay = step.retry_backoff ** (attempt + 1)
                get_console().print_retry(step.name, attempts, code, delay)
                if self.cancel.wait(delay):
                    outcome = "cancelled"
                    break

        result = StepResult(
            job=job.name,
            name=step.name,
            status=StepStatus.SUCCESS,
            exit_code=code,
            attempts=attempts,
            duration=time.monotonic() - started,
            stdout=self._tail(out),
            stderr=self._tail(err),
            target=step.target,
        )

        if outcome == "cancelled":
            result.status = StepStatus.CANCELLED
            raise RunCancelled("run cancelled while step was running", job=job.name, step=step.name, result=result)

        if code != 0:
            result.status = StepStatus.FAILED
            error = StepExecutionError(
                message=f"exit code {code}" + (" (timed out)" if outcome == "timeout" else ""),
                job=job.name,
                step=step.name,
                cmd=self.secrets.mask(cmd),
                exit_code=code,
                output_tail=result.stderr or result.stdout,
                result=result,
            )
            raise error

        return result

    def run_job(self, job: Job, run: WorkflowRun) -> None:
        """
        Execute every step of `job`, appending StepResults to `run`.

        A blocking failure marks the remaining steps skipped (they are never
        spawned) and re-raises. Non-blocking failures are recorded and the job
        carries on.
        """
        console = get_console()
        console.print_job_start(job.name)
        halted: Optional[ReleaseError] = None

        for step in job.steps:
            if halted is not None:
                run.steps.append(StepResult(job=job.name, name=step.name, status=StepStatus.SKIPPED, target=step.target))
                console.print_step_skipped(step.name)
                continue

            console.print_step(step.name)
            run.log.append(f"[{job.name}] STEP {step.name}")
            try:
                result = self.run_step(job, step)
            except ReleaseError as e:
                result = e.result or StepResult(
                    job=job.name, name=step.name, status=StepStatus.FAILED, target=step.target
                )
                run.steps.append(result)
                run.log.extend(self._log_lines(job, result))
                run.log.append(self.secrets.mask(str(e)))

                if isinstance(e, StepExecutionError) and step.continue_on_error:
                    console.print_failure(step.name, str(e), exit_code=e.exit_code, hint="continue-on-error: carrying on")
                    continue

                console.print_failure(step.name, str(e), exit_code=result.exit_code)
                halted = e
                continue

            run.steps.append(result)
            run.log.extend(self._log_lines(job, result))
            console.print_step_output(result.stdout, result.stderr)
            console.print_success(step.name)

        if halted is not None:
            raise halted

    def _log_lines(self, job: Job, result: StepResult) -> List[str]:
        lines = [f"[{job.name}] {result.name}: {result.status.value} (exit={result.exit_code}, attempts={result.attempts})"]
        for stream in (result.stdout, result.stderr):
            lines.extend(f"[{job.name}] | {line}" for line in stream.splitlines())
        return lines
