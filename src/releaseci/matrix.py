# matrix.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Iterable, List

from .errors import ConfigurationError
from .model import Job, Step

DEFAULT_TARGET_ENV = "CROSS_BUILD_TARGET"


def validate_targets(targets: Iterable[Any], *, where: str = "matrix") -> List[str]:
    """Targets must be a finite, non-empty list of unique non-empty strings."""
    values = list(targets)
    if not values:
        raise ConfigurationError(f"{where}: target list is empty")
    seen = set()
    for t in values:
        if not isinstance(t, str) or not t.strip():
            raise ConfigurationError(f"{where}: invalid target {t!r}")
        if t in seen:
            raise ConfigurationError(f"{where}: duplicate target {t!r}")
        seen.add(t)
    return values


def expand(step: Step, targets: Iterable[str], env_var: str = DEFAULT_TARGET_ENV) -> List[Step]:
    """
    One concrete step per target.

    The target is put into the step's env under `env_var` and substituted for
    `{target}` in the command.
    """
    if not env_var:
        raise ConfigurationError(f"step {step.name!r}: target env var name is empty")
    values = validate_targets(targets, where=f"step {step.name!r}")

    out: List[Step] = []
    for t in values:
        env = dict(step.env)
        env[env_var] = t
        out.append(
            replace(
                step,
                name=f"{step.name} [{t}]",
                run=step.run.replace("{target}", t),
                env=env,
                target=t,
            )
        )
    return out


class Matrix:
    """
    Job-level matrix.

    Example:
        Matrix("target", ["x86_64-apple-darwin", "aarch64-apple-darwin"]).jobs(
            lambda t: job(f"release-{t}", sh("Release", "cargo release", env={"T": t}))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
