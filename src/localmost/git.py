# git.py
# Small, focused wrapper around the Git CLI.
# Everything else asks this module for repository facts instead of
# calling subprocess("git ...") directly.

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_REMOTE_RE = re.compile(r"(?:github\.com[:/])?([^/:]+)/([^/]+?)(?:\.git)?/?$")


def _git(args: list[str], cwd: str | Path | None = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises CalledProcessError on a non-zero exit, FileNotFoundError when git
    is not installed. Callers that can live without the answer catch both.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: str | Path | None = None) -> Optional[Path]:
    """Top level of the repository containing `cwd`, or None outside a repo."""
    try:
        return Path(_git(["rev-parse", "--show-toplevel"], cwd))
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def head_sha(cwd: str | Path | None = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: str | Path | None = None) -> str:
    """
    Fully-qualified ref for HEAD ("refs/heads/main"); the bare sha when HEAD
    is detached.
    """
    try:
        return _git(["symbolic-ref", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def get_remote_url(remote: str = "origin", cwd: str | Path | None = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def repository_from_url(url: str) -> Optional[str]:
    """
    "git@github.com:owner/repo.git" / "https://github.com/owner/repo" -> "owner/repo".
    """
    m = _REMOTE_RE.search(url.strip())
    if not m:
        return None
    return f"{m.group(1)}/{m.group(2)}"


def repository_id(cwd: str | Path | None = None) -> Optional[str]:
    """owner/repo from the origin remote, or None outside a repo / without a remote."""
    try:
        return repository_from_url(get_remote_url("origin", cwd))
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


@dataclass(frozen=True)
class GitInfo:
    sha: str
    ref: str


def git_info(cwd: str | Path | None = None) -> GitInfo:
    """HEAD sha and ref; zeros / refs/heads/main when not a git checkout."""
    try:
        return GitInfo(sha=head_sha(cwd), ref=current_ref(cwd))
    except (subprocess.CalledProcessError, FileNotFoundError):
        return GitInfo(sha="0" * 40, ref="refs/heads/main")


def update_submodules(cwd: str | Path) -> None:
    """`git submodule update --init --recursive`; raises on failure."""
    _git(["submodule", "update", "--init", "--recursive"], cwd)
