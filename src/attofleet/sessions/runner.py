"""Contract the orchestration core needs from an agent-process handle."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from attofleet.protocol import (
    CreateChildToolResponse,
    CreatePRToolResponse,
    GetReviewCommentsToolResponse,
    ListChildrenToolResponse,
    MergeChildToolResponse,
    PushBranchToolResponse,
)
from attofleet.types import Message


@runtime_checkable
class AgentRunner(Protocol):
    """Handle to one session's agent process.

    How the process is spawned and how it talks to the agent is owned by the
    implementation; the core only drives it through these calls.
    """

    @property
    def session_id(self) -> str: ...

    def is_streaming(self) -> bool: ...

    def get_messages(self) -> list[Message]: ...

    def set_fork_from_session(self, parent_session_id: str) -> None:
        """Start the next conversation as a fork of the parent's."""
        ...

    def set_allowed_tools(self, tools: list[str]) -> None: ...

    async def send(self, text: str) -> str:
        """Send *text* and return once the agent has finished responding."""
        ...

    def send_create_pr_response(self, response: CreatePRToolResponse) -> None: ...

    def send_push_branch_response(self, response: PushBranchToolResponse) -> None: ...

    def send_review_comments_response(self, response: GetReviewCommentsToolResponse) -> None: ...

    # Supervisor sessions only
    def send_create_child_response(self, response: CreateChildToolResponse) -> None: ...

    def send_list_children_response(self, response: ListChildrenToolResponse) -> None: ...

    def send_merge_child_response(self, response: MergeChildToolResponse) -> None: ...

    def stop(self) -> None: ...


# (session_id, worktree, started, initial_messages) -> runner
RunnerFactory = Callable[[str, str, bool, list[Message]], AgentRunner]

# session_id -> saved conversation
MessageLoader = Callable[[str], list[Message]]
