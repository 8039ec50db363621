"""Worktree setup for child sessions and teardown for merged ones."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from attofleet.defaults import WORKTREES_DIR
from attofleet.errors import GitCommandError

log = logging.getLogger(__name__)


def _prune_worktrees(repo_root: Path) -> None:
    """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
    try:
        subprocess.run(
            ["git", "worktree", "prune"],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        log.warning("git worktree prune failed: %s", exc.stderr)
    except OSError as exc:
        log.warning("could not run git worktree prune: %s", exc)


def _delete_branch(repo_root: Path, branch_name: str) -> None:
    """Force-delete a local branch. A missing branch is not an error."""
    try:
        subprocess.run(
            ["git", "branch", "-D", branch_name],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        log.debug("git branch -D %s: %s", branch_name, exc.stderr)
    except OSError as exc:
        log.warning("could not run git branch -D %s: %s", branch_name, exc)


def remove_worktree(repo_path: str, worktree: str, branch: str = "") -> bool:
    """Remove a session's worktree and its local branch, then prune.

    Returns False when the worktree could not be removed; the branch is
    left alone in that case.
    """
    repo_root = Path(repo_path)
    if worktree and Path(worktree).exists():
        try:
            subprocess.run(
                ["git", "worktree", "remove", "--force", worktree],
                cwd=repo_root,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            log.warning("git worktree remove %s failed: %s", worktree, exc.stderr)
            return False
        except OSError as exc:
            log.warning("could not run git for %s: %s", worktree, exc)
            return False
    if branch:
        _delete_branch(repo_root, branch)
    _prune_worktrees(repo_root)
    return True


def session_worktree_path(repo_path: str, session_id: str) -> str:
    """Session worktrees live beside the repository, one directory per session."""
    return str(Path(repo_path).resolve().parent / WORKTREES_DIR / session_id)


def create_worktree(repo_path: str, worktree: str, branch: str, start_point: str = "HEAD") -> None:
    """Check out a new *branch* from *start_point* into *worktree*.

    Raises :class:`GitCommandError` when git refuses.
    """
    repo_root = Path(repo_path)
    Path(worktree).parent.mkdir(parents=True, exist_ok=True)

    # Stale bookkeeping makes ``worktree add`` refuse reused paths
    _prune_worktrees(repo_root)

    args = ["git", "worktree", "add", "-b", branch, worktree, start_point or "HEAD"]
    try:
        subprocess.run(
            args,
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise GitCommandError(
            f"failed to create worktree: {stderr or exc}",
            command=args,
            returncode=exc.returncode,
            stderr=stderr,
        ) from exc
    except OSError as exc:
        raise GitCommandError(f"could not run git: {exc}", command=args) from exc
    log.info("created worktree %s on branch %s", worktree, branch)
