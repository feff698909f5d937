# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to describe what triggered a run (revision, ref, actor);
# nothing else in the engine calls git.

from __future__ import annotations

import subprocess
from typing import Optional

from ..model import Trigger


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError if git exits non-zero and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the HEAD commit (the revision a run scans)."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Current branch name, or the commit SHA on a detached HEAD.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd)
    return ref


def actor(cwd: Optional[str] = None) -> str:
    """Configured git user name (git config user.name)."""
    return _git(["config", "user.name"], cwd=cwd)


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def _dirty_flag(cwd: Optional[str] = None) -> str:
    return "1" if is_dirty(cwd) else ""


def _try(fn, cwd: Optional[str]) -> Optional[str]:
    try:
        return fn(cwd) or None
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def trigger_from_git(
    cwd: Optional[str] = None,
    *,
    revision: Optional[str] = None,
    ref: Optional[str] = None,
    user: Optional[str] = None,
) -> Trigger:
    """
    Build a Trigger for the working copy at `cwd`. Explicit values win;
    facts git cannot provide (not a repo, no git binary) stay None.
    """
    extra = {}
    if revision is None and _try(_dirty_flag, cwd):
        extra["dirty"] = "1"
    return Trigger(
        revision=revision or _try(head_sha, cwd),
        ref=ref or _try(current_ref, cwd),
        actor=user or _try(actor, cwd),
        extra=extra,
    )
