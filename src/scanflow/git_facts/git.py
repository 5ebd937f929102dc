# git.py
# Small wrapper around the Git CLI, used to name artifact bundles when the
# CI environment does not provide a project name or ref.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the enclosing Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def current_ref(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Current branch name, or the short commit SHA on a detached HEAD.
    None outside a repository.
    """
    try:
        branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
        if branch and branch != "HEAD":
            return branch
        return _git(["rev-parse", "--short", "HEAD"], cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def project_name(cwd: Optional[str | Path] = None) -> str:
    """Repository directory name, falling back to the working directory name."""
    try:
        return repo_root(cwd).name
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(cwd or ".").resolve().name
