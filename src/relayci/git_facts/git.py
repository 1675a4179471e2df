# git.py
# Small, focused wrapper around the Git CLI.
# Every Git interaction of relayci goes through here, so the rest of the
# codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import getpass
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from ..model import RunContext


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero, and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository root, as git sees it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of HEAD, e.g. `refs/heads/main`.

    A detached HEAD has no symbolic ref; the commit sha is returned instead.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> Optional[str]:
    try:
        return _git(["remote", "get-url", remote], cwd) or None
    except subprocess.CalledProcessError:
        return None


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`: where the branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files, sorted."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def diff_against(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Changed files for trigger path filters.

    Dirty tree: whatever is uncommitted. Clean tree: HEAD against its
    merge-base with `compare_ref`, falling back to HEAD~1.
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)
    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        # first commit: nothing to diff against
        return []


def context_from_git(
    *,
    event: str = "push",
    workflow: str = "",
    head_ref: str = "",
    base_ref: str = "",
    compare_ref: Optional[str] = None,
    variables: Optional[Dict[str, str]] = None,
    cwd: Optional[str | Path] = None,
) -> RunContext:
    """
    Build a RunContext from the local checkout.

    Changed files are only computed when `compare_ref` is given; otherwise
    they stay unknown and path filters pass.
    """
    ref = current_ref(cwd)
    sha = head_sha(cwd)
    files = diff_against(compare_ref, cwd) if compare_ref else []
    try:
        actor = _git(["config", "user.name"], cwd)
    except subprocess.CalledProcessError:
        actor = getpass.getuser()
    return RunContext(
        event=event,
        ref=ref,
        sha=sha,
        workflow=workflow,
        head_ref=head_ref,
        base_ref=base_ref,
        actor=actor,
        changed_files=tuple(files),
        variables=dict(variables or {}),
    )
