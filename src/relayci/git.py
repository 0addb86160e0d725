# git.py
# Small, focused wrapper around the Git CLI.
# The orchestrator only needs a few facts about the working tree: where it is,
# which ref is checked out and which commit, to fill the `github` context and
# default concurrency group of a local run.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
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
    """Absolute path to the root of the Git repository containing cwd."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully qualified ref of the checkout: refs/heads/<branch>, or the commit
    SHA when HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def facts(cwd: Optional[str | Path] = None) -> dict[str, str]:
    """
    Best-effort `github`-style context for a local checkout.
    Outside a repository (or without git) the values are empty.
    """
    try:
        return {"ref": current_ref(cwd=cwd), "sha": head_sha(cwd=cwd)}
    except (subprocess.CalledProcessError, FileNotFoundError):
        return {"ref": "", "sha": ""}
