# git.py
# Small, focused wrapper around the Git CLI.
# Everything that needs to know about the local checkout (triggering ref,
# commit SHA, checkout commands) goes through here.

from __future__ import annotations

import os
import shlex
import subprocess
from typing import Mapping, Optional, Tuple

# CI platforms that export the pushed ref / commit. Short names get the
# refs/... prefix matching the variable so the event type is never lost.
REF_VARS = (
    ("GITHUB_REF", ""),
    ("CI_COMMIT_TAG", "refs/tags/"),
    ("CI_COMMIT_BRANCH", "refs/heads/"),
    ("BUILDKITE_TAG", "refs/tags/"),
    ("BUILDKITE_BRANCH", "refs/heads/"),
)
SHA_VARS = ("GITHUB_SHA", "CI_COMMIT_SHA", "BUILDKITE_COMMIT")


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git itself is missing.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_tag(cwd: Optional[str] = None) -> Optional[str]:
    """The tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def resolve_ref(
    ref: Optional[str] = None,
    sha: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Work out (ref, sha) for a run.

    Order: explicit values, then the CI platform's variables, then the local
    checkout (tag at HEAD, falling back to refs/heads/<branch>).
    Tags found locally are returned as refs/tags/<name> so the event type is known.
    """
    env = os.environ if environ is None else environ

    if ref is None:
        ref = next((prefix + env[v] for v, prefix in REF_VARS if env.get(v)), None)
    if sha is None:
        sha = next((env[v] for v in SHA_VARS if env.get(v)), None)

    try:
        if ref is None:
            tag = current_tag(cwd=cwd)
            if tag:
                ref = f"refs/tags/{tag}"
            else:
                branch = current_branch(cwd=cwd)
                ref = f"refs/heads/{branch}" if branch else None
        if sha is None:
            sha = head_sha(cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        # not a checkout (or no git): whatever we have so far is all we get
        pass

    return ref, sha


def checkout_command(ref: str, *, repo: Optional[str] = None, path: str = ".") -> str:
    """
    Shell command that brings `path` to `ref`.

    With a repo URL: clone if missing, otherwise fetch. Without one: fetch tags
    in the existing checkout.
    """
    q_path = shlex.quote(path)
    q_ref = shlex.quote(ref)
    if repo:
        q_repo = shlex.quote(repo)
        return (
            f"if [ -d {q_path}/.git ]; then git -C {q_path} fetch --tags --force origin; "
            f"else git clone {q_repo} {q_path}; fi && git -C {q_path} checkout --force {q_ref}"
        )
    return f"git -C {q_path} fetch --tags --force origin && git -C {q_path} checkout --force {q_ref}"
