"""Conversation-file hand-off for forked sessions.

The agent CLI stores each conversation as ``<session-id>.jsonl`` under a
per-project directory derived from the working directory. A child session
runs in its own worktree, so it can only resume the parent's conversation if
the parent's file is copied into the child's project directory first.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from attofleet.logger import session_logger


def escape_project_path(path: str) -> str:
    """Project directory name the agent CLI uses for a working directory."""
    return path.replace("/", "-").replace(".", "-")


def conversation_file(conversation_dir: str | Path, worktree: str, session_id: str) -> Path:
    root = Path(conversation_dir).expanduser()
    return root / escape_project_path(worktree) / f"{session_id}.jsonl"


def copy_session_for_fork(
    parent_session_id: str,
    parent_worktree: str,
    child_worktree: str,
    conversation_dir: str | Path,
) -> Path:
    """Copy the parent's conversation into the child's project directory.

    Returns the destination path. Raises ``FileNotFoundError`` when the parent
    has no conversation file and ``OSError`` for copy failures.
    """
    src = conversation_file(conversation_dir, parent_worktree, parent_session_id)
    if not src.is_file():
        raise FileNotFoundError(f"No conversation file for parent session at {src}")

    dst = conversation_file(conversation_dir, child_worktree, parent_session_id)
    dst.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    shutil.copyfile(src, dst)

    session_logger(__name__, parent_session_id).debug(
        "copied conversation for fork", src=str(src.parent), dst=str(dst.parent),
    )
    return dst
