# provision.py
from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ProvisioningError, RunCancelled
from .executor import CancelToken
from .model import (
    CargoInstall,
    CommandInstall,
    PipInstall,
    Preinstalled,
    RustupInstall,
    ToolSpec,
)
from .ui.console import get_console

# (argv, env) -> (exit code, combined output)
CommandRunner = Callable[[List[str], Dict[str, str]], Tuple[int, str]]

ANY_VERSION = ("", "*", "latest", "stable")

TOOL_HINTS = {
    "cargo": "Install Rust via https://rustup.rs/ or fix PATH.",
    "rustc": "Install Rust via https://rustup.rs/ or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs/.",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "docker": "Install Docker and ensure the daemon is running.",
}

_VERSION_RX = re.compile(r"v?(\d+(?:\.\d+)+(?:[-+][0-9A-Za-z.]+)?)")


def run_command(argv: List[str], env: Dict[str, str]) -> Tuple[int, str]:
    try:
        proc = subprocess.run(argv, env=env, text=True, capture_output=True, check=False)
    except FileNotFoundError as e:
        return 127, str(e)
    return proc.returncode, (proc.stdout or "") + (proc.stderr or "")


def version_tokens(text: str) -> List[str]:
    return _VERSION_RX.findall(text or "")


def satisfies(version_output: str, constraint: str) -> bool:
    """
    Does the tool's version output satisfy the constraint?

      *, latest, stable  -> any version
      1.2.*              -> any version starting with 1.2
      1.2.3              -> exactly 1.2.3
    """
    constraint = (constraint or "").strip()
    if constraint in ANY_VERSION:
        return True
    constraint = constraint.lstrip("v")
    tokens = version_tokens(version_output)
    if constraint.endswith(".*"):
        prefix = constraint[:-2]
        return any(t == prefix or t.startswith(prefix + ".") for t in tokens)
    return constraint in tokens


def _pinned(version: str) -> bool:
    return (version or "").strip() not in ANY_VERSION


def install_commands(tool: ToolSpec) -> List[List[str]]:
    """The installer invocations for a tool, in order."""
    m = tool.install
    v = tool.version

    if isinstance(m, Preinstalled):
        return []

    if isinstance(m, CargoInstall):
        cmd = ["cargo", "install", tool.name]
        if _pinned(v):
            cmd += ["--version", v]
        if m.locked:
            cmd.append("--locked")
        return [cmd]

    if isinstance(m, PipInstall):
        pkg = m.package or tool.name
        if _pinned(v):
            pkg = f"{pkg}=={v}"
        return [[sys.executable, "-m", "pip", "install", pkg]]

    if isinstance(m, RustupInstall):
        channel = v if _pinned(v) else "stable"
        cmd = ["rustup", "toolchain", "install", channel, "--profile", m.profile]
        for c in m.components:
            cmd += ["--component", c]
        cmds = [cmd]
        if m.override:
            cmds.append(["rustup", "default", channel])
        return cmds

    if isinstance(m, CommandInstall):
        # only these two placeholders; shell braces like ${HOME} pass through
        command = m.command.replace("{name}", tool.name).replace("{version}", v)
        return [["/bin/sh", "-c", command]]

    raise ProvisioningError(f"unknown install method for {tool.name}: {m!r}")


@dataclass(frozen=True)
class ProvisionResult:
    name: str
    action: str                 # "present" | "installed"
    version: str = ""


class EnvironmentProvisioner:
    """
    Makes sure every required tool is available before steps run.

    Idempotent: a tool found (or installed) once is remembered and later
    provision() calls do nothing for it.
    """

    def __init__(
        self,
        tools: Iterable[ToolSpec] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.tools = list(tools)
        self.env: Dict[str, str] = dict(env if env is not None else os.environ)
        self._run = runner or run_command
        self._provisioned: Dict[str, str] = {}

    @property
    def provisioned(self) -> Dict[str, str]:
        return dict(self._provisioned)

    def detect(self, tool: ToolSpec) -> Optional[str]:
        """
        Best-effort version discovery.

        Returns None when the executable is not on PATH, otherwise the version
        output ("" if the tool refuses every version flag).
        """
        exe = shutil.which(tool.executable, path=self.env.get("PATH"))
        if exe is None:
            return None
        for flag in ("--version", "-V", "version"):
            code, out = self._run([exe, flag], self.env)
            text = " ".join(out.split())
            if code == 0 and text:
                return text
        return ""

    def provision(
        self,
        tools: Optional[Iterable[ToolSpec]] = None,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> List[ProvisionResult]:
        """
        Check or install each tool in order.

        `cancel` is checked before every tool and every install command; an
        install already running is allowed to finish.
        """
        console = get_console()

        def check_cancel(tool: ToolSpec) -> None:
            if cancel is not None and cancel.cancelled:
                raise RunCancelled(f"run cancelled while provisioning {tool.name}")
        results: List[ProvisionResult] = []

        for tool in (self.tools if tools is None else list(tools)):
            check_cancel(tool)
            if tool.name in self._provisioned:
                results.append(ProvisionResult(tool.name, "present", self._provisioned[tool.name]))
                continue

            found = self.detect(tool)
            if found is not None and satisfies(found, tool.version):
                console.print_tool(tool.name, "present", found)
                self._provisioned[tool.name] = found
                results.append(ProvisionResult(tool.name, "present", found))
                continue

            commands = install_commands(tool)
            if not commands:
                raise ProvisioningError(
                    f"{tool.name} {tool.version} is not available and is marked preinstalled",
                    details={
                        "found": found if found is not None else "not on PATH",
                        "hint": TOOL_HINTS.get(tool.executable, f"Install {tool.name} or fix PATH."),
                    },
                )

            for argv in commands:
                check_cancel(tool)
                console.print_tool(tool.name, "installing", " ".join(argv))
                code, out = self._run(argv, self.env)
                if code != 0:
                    raise ProvisioningError(
                        f"installing {tool.name} failed (exit={code})",
                        details={"cmd": " ".join(argv), "output": out.strip()[-2000:]},
                    )

            found = self.detect(tool)
            if found is None or not satisfies(found, tool.version):
                raise ProvisioningError(
                    f"{tool.name} still not satisfying {tool.version!r} after install",
                    details={"found": found if found is not None else "not on PATH"},
                )
            console.print_tool(tool.name, "installed", found)
            self._provisioned[tool.name] = found
            results.append(ProvisionResult(tool.name, "installed", found))

        return results
