import os
import stat
from pathlib import Path

import pytest

from releaseci.executor import StepExecutor
from releaseci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    c = Console()
    set_console(c)
    yield c
    c.set_masker(None)


@pytest.fixture
def base_env():
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


@pytest.fixture
def executor(tmp_path, base_env):
    return StepExecutor(repo_root=tmp_path, base_env=base_env, poll_interval=0.01, kill_grace=1.0)


def write_script(directory: Path, name: str, body: str) -> Path:
    """Drop an executable shell script into `directory`."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path
