# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .errors import ConfigurationError
from .matrix import DEFAULT_TARGET_ENV, expand
from .model import (
    CargoInstall,
    CommandInstall,
    InstallMethod,
    Job,
    PipInstall,
    Preinstalled,
    RustupInstall,
    SecretSpec,
    Step,
    ToolSpec,
    TriggerSpec,
    Workflow,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Sequence[str] = (),
    requires_env: Sequence[str] = (),
    continue_on_error: bool = False,
    retries: int = 0,
    retry_backoff: float = 2.0,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    if retries < 0:
        raise ConfigurationError(f"step {name!r}: retries must be >= 0")
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=tuple(secrets),
        requires_env=tuple(requires_env),
        continue_on_error=continue_on_error,
        retries=retries,
        retry_backoff=retry_backoff,
        timeout=timeout,
    )


def checkout(
    name: str = "Checkout",
    *,
    repo: str | None = None,
    ref: str | None = None,
    path: str = ".",
) -> Step:
    """Built-in step: bring the workspace to the triggering ref (or `ref`)."""
    data = {"path": path}
    if repo:
        data["repo"] = repo
    if ref:
        data["ref"] = ref
    return Step(name=name, kind="checkout", data=data)


def for_targets(step: Step, targets: Iterable[str], env_var: str = DEFAULT_TARGET_ENV) -> List[Step]:
    """Cross-compilation sugar: one copy of `step` per target triple."""
    return expand(step, targets, env_var)


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Union[Step, List[Step]],  # allow: job("x", sh(...), for_targets(...))
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    for s in steps:
        if isinstance(s, list):
            steps_final.extend(s)
        else:
            steps_final.append(s)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
    )


# ---------------------------------------------------------------------
# Tools, trigger, secrets
# ---------------------------------------------------------------------

_METHODS = {
    "preinstalled": Preinstalled,
    "cargo": CargoInstall,
    "pip": PipInstall,
    "rustup": RustupInstall,
    "command": CommandInstall,
}


def tool(
    name: str,
    version: str = "*",
    *,
    install: Union[str, InstallMethod] = "preinstalled",
    binary: str | None = None,
    **options,
) -> ToolSpec:
    """
    tool("cargo-release", install="cargo")
    tool("rust", "stable", install="rustup", override=True)
    """
    if isinstance(install, str):
        try:
            cls = _METHODS[install]
        except KeyError:
            raise ConfigurationError(
                f"tool {name!r}: unknown install method {install!r}",
                details={"allowed": ", ".join(sorted(_METHODS))},
            ) from None
        if "components" in options:
            options["components"] = tuple(options["components"])
        method = cls(**options)
    else:
        method = install
    if isinstance(method, CommandInstall) and not method.command:
        raise ConfigurationError(f"tool {name!r}: command install needs a command")
    return ToolSpec(name=name, version=version, install=method, binary=binary)


def on_tag(*patterns: str) -> TriggerSpec:
    return TriggerSpec(event="tag", patterns=tuple(patterns or ("*",)))


def on_branch(*patterns: str) -> TriggerSpec:
    return TriggerSpec(event="branch", patterns=tuple(patterns or ("*",)))


def secret(name: str, *, from_env: str | None = None, required: bool = True) -> SecretSpec:
    return SecretSpec(name=name, from_env=from_env, required=required)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "release",
    on: TriggerSpec | None = None,
    tools: Sequence[ToolSpec] = (),
    secrets: Sequence[SecretSpec] = (),
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from releaseci import wf, job, sh, on_tag

        def workflow():
            return wf(
                job("release", sh("Release", "cargo release --execute")),
                on=on_tag("v*"),
            )
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        trigger=on or TriggerSpec(),
        tools=list(tools),
        secrets=list(secrets),
        env={k: str(v) for k, v in (env or {}).items()},
    )
