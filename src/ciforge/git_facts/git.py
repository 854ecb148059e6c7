# git.py
# Small, focused wrapper around the Git CLI.
# The runner only needs a handful of facts about the checkout (branch,
# commit, remote) to seed a RunContext; everything goes through _git().

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises:
        subprocess.CalledProcessError: git exited non-zero (not a repo, no remote, ...)
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    On a detached HEAD (typical for CI checkouts of a tag or SHA) git prints
    "HEAD"; in that case fall back to the CI-provided GITHUB_REF_NAME when
    present so conditions like `branch == 'main'` keep working.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    if name == "HEAD":
        return os.environ.get("GITHUB_REF_NAME", "HEAD")
    return name


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    """URL of a configured remote."""
    return _git(["remote", "get-url", remote], cwd)
