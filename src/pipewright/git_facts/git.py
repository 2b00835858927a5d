# git.py
# Small, focused wrapper around the Git CLI.
# The rest of the codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
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
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """
    The tag pointing exactly at HEAD, if any.

    Mirrors `git describe --tags --exact-match`, which release jobs use to
    name the version being published.
    """
    try:
        return _git(["describe", "--tags", "--exact-match"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Checked-out branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref for the checkout: `refs/tags/<tag>` when HEAD is
    tagged, else `refs/heads/<branch>`, else the bare commit SHA.
    """
    tag = exact_tag(cwd)
    if tag:
        return f"refs/tags/{tag}"
    branch = current_branch(cwd)
    if branch:
        return f"refs/heads/{branch}"
    return head_sha(cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)
