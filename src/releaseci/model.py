# model.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from .errors import InvalidTransition, ReleaseError


# ---------------------------------------------------------------------
# Definitions (parsed once at load time, never mutated mid-run)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a release job."""
    name: str
    run: str = ""
    kind: str = "shell"                        # "shell" | "checkout"
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    secrets: Tuple[str, ...] = ()              # secret names injected into this step only
    requires_env: Tuple[str, ...] = ()         # ambient vars that must exist before spawning
    continue_on_error: bool = False
    retries: int = 0
    retry_backoff: float = 2.0
    timeout: float | None = None
    target: str | None = None                  # set by the matrix expander
    data: Dict[str, str] | None = None         # kind-specific payload (checkout: repo/ref/path)


@dataclass
class Job:
    """
    A release job: ordered steps + dependencies + tools it needs.

    `requires` names tools from the workflow's tool list; an empty list means
    "all workflow tools".
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)


# ---- install methods (tagged variant on `method`) ----

@dataclass(frozen=True)
class Preinstalled:
    method: str = "preinstalled"


@dataclass(frozen=True)
class CargoInstall:
    locked: bool = False
    method: str = "cargo"


@dataclass(frozen=True)
class PipInstall:
    package: str | None = None                 # defaults to the tool name
    method: str = "pip"


@dataclass(frozen=True)
class RustupInstall:
    profile: str = "minimal"
    override: bool = False
    components: Tuple[str, ...] = ()
    method: str = "rustup"


@dataclass(frozen=True)
class CommandInstall:
    command: str = ""                          # may use {name} / {version}
    method: str = "command"


InstallMethod = Union[Preinstalled, CargoInstall, PipInstall, RustupInstall, CommandInstall]


@dataclass(frozen=True)
class ToolSpec:
    """A tool that must be on PATH before any step runs."""
    name: str
    version: str = "*"
    install: InstallMethod = field(default_factory=Preinstalled)
    binary: str | None = None

    @property
    def executable(self) -> str:
        if self.binary:
            return self.binary
        if isinstance(self.install, RustupInstall):
            return "rustc"
        return self.name


@dataclass(frozen=True)
class TriggerSpec:
    event: str = "tag"                         # "tag" | "branch"
    patterns: Tuple[str, ...] = ("*",)


@dataclass(frozen=True)
class SecretSpec:
    name: str                                  # variable name the step sees
    from_env: str | None = None                # source variable (defaults to name)
    required: bool = True

    @property
    def source(self) -> str:
        return self.from_env or self.name


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    trigger: TriggerSpec = field(default_factory=TriggerSpec)
    tools: List[ToolSpec] = field(default_factory=list)
    secrets: List[SecretSpec] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def tools_for(self, job: Job) -> List[ToolSpec]:
        if not job.requires:
            return list(self.tools)
        wanted = set(job.requires)
        return [t for t in self.tools if t.name in wanted]


# ---------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# pending -> running -> {success|failed}
_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCESS, RunStatus.FAILED},
    RunStatus.SUCCESS: set(),
    RunStatus.FAILED: set(),
}


@dataclass
class StepResult:
    job: str
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    attempts: int = 0
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""
    target: str | None = None


@dataclass
class WorkflowRun:
    """One invocation of a workflow for a single trigger event."""
    workflow: str
    ref: str
    sha: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    log: List[str] = field(default_factory=list)
    error_kind: str | None = None
    error_message: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def done(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.FAILED)

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RunStatus.SUCCESS else 1

    def _move(self, new: RunStatus) -> None:
        if new not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"cannot move run from {self.status.value} to {new.value}",
                details={"run": self.id},
            )
        self.status = new

    def start(self) -> None:
        self._move(RunStatus.RUNNING)
        self.started_at = time.time()

    def succeed(self) -> None:
        self._move(RunStatus.SUCCESS)
        self.finished_at = time.time()

    def fail(self, error: ReleaseError | None = None) -> None:
        self._move(RunStatus.FAILED)
        self.finished_at = time.time()
        if error is not None:
            self.error_kind = error.kind
            self.error_message = error.message

    def executed(self) -> List[str]:
        """Names of steps whose process was actually spawned."""
        return [s.name for s in self.steps if s.attempts > 0]
