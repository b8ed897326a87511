# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(eq=False)
class ReleaseError(Exception):
    """
    Structured release error with enough context for:
      - clean CLI output
      - the run's status + log stream
      - debugging without full tracebacks
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)
    result: Any = field(default=None, repr=False)   # StepResult of the failing step, if any

    kind = "release_error"
    exit_status = 1

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(ReleaseError):
    """Malformed trigger/step/tool definitions. Raised before any step runs."""
    kind = "configuration_error"
    exit_status = 2


class ProvisioningError(ReleaseError):
    """A required tool could not be installed or verified."""
    kind = "provisioning_error"


class SecretMissingError(ReleaseError):
    """A required credential is absent from the environment."""
    kind = "secret_missing"


@dataclass(eq=False)
class StepExecutionError(ReleaseError):
    cmd: str = ""
    exit_code: int = 1
    output_tail: str = ""

    kind = "step_failed"

    def __str__(self) -> str:
        where = f"[{self.job}] " if self.job else ""
        return f"{where}step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class RunCancelled(ReleaseError):
    kind = "cancelled"
    exit_status = 130


class InvalidTransition(ReleaseError):
    """A WorkflowRun was asked to move backwards or out of a terminal state."""
    kind = "invalid_transition"
