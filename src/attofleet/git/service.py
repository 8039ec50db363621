"""Interface the pipeline needs from the git/PR host."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from attofleet.protocol import ReviewComment
from attofleet.types import CIStatus, ReviewDecision


@runtime_checkable
class PRService(Protocol):
    """Pull-request operations keyed by repository and branch.

    Implementations raise :class:`attofleet.errors.GitCommandError` on
    failure; the dispatcher converts failures into event fields.
    """

    async def check_review_decision(self, repo_path: str, branch: str) -> ReviewDecision: ...

    async def get_comment_count(self, repo_path: str, branch: str) -> int: ...

    async def check_ci_status(self, repo_path: str, branch: str) -> CIStatus: ...

    async def fetch_review_comments(self, repo_path: str, branch: str) -> list[ReviewComment]: ...

    async def create_pr(
        self, repo_path: str, worktree: str, branch: str, base_branch: str, title: str = "",
    ) -> str:
        """Commit pending work, push and open a PR. Returns the PR URL."""
        ...

    async def push_branch(self, repo_path: str, worktree: str, branch: str, commit_message: str = "") -> None: ...

    async def merge_pr(self, repo_path: str, branch: str, method: str = "squash") -> None: ...

    async def merge_to_parent(
        self,
        child_worktree: str,
        child_branch: str,
        parent_worktree: str,
        parent_branch: str,
        commit_message: str = "",
    ) -> str:
        """Merge a child session's branch into its parent's worktree. Returns a summary line."""
        ...
