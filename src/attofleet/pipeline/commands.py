"""Outward actions the pipeline machine asks its executor to perform.

Commands are plain values. The machine never performs I/O itself; the
dispatcher turns each command into a background task, a runner call or a
notification, and feeds any outcome back as a new event.
"""

from __future__ import annotations

from dataclasses import dataclass

from attofleet.protocol import (
    CreateChildToolRequest,
    CreatePRToolRequest,
    GetReviewCommentsToolRequest,
    PushBranchToolRequest,
    ToolResponse,
)
from attofleet.types import NotificationLevel


@dataclass(frozen=True, slots=True)
class RunTests:
    session_id: str
    worktree: str
    command: str
    iteration: int


@dataclass(frozen=True, slots=True)
class SchedulePoll:
    """Query review/CI/comment state after *delay* seconds."""

    session_id: str
    attempt: int
    delay: float = 0.0


@dataclass(frozen=True, slots=True)
class FetchReviewComments:
    session_id: str
    comment_count: int


@dataclass(frozen=True, slots=True)
class CreatePR:
    session_id: str


@dataclass(frozen=True, slots=True)
class CreatePRForTool:
    session_id: str
    request: CreatePRToolRequest


@dataclass(frozen=True, slots=True)
class PushBranchForTool:
    session_id: str
    request: PushBranchToolRequest


@dataclass(frozen=True, slots=True)
class FetchReviewCommentsForTool:
    session_id: str
    request: GetReviewCommentsToolRequest


@dataclass(frozen=True, slots=True)
class CreateChildSession:
    """Create a worktree and session for a supervisor's child, then start it on the task."""

    session_id: str
    request: CreateChildToolRequest


@dataclass(frozen=True, slots=True)
class MergeChildToParent:
    session_id: str
    child_id: str
    request_id: str


@dataclass(frozen=True, slots=True)
class SendToolResponse:
    """Answer a tool request through the session's runner."""

    session_id: str
    response: ToolResponse


@dataclass(frozen=True, slots=True)
class MergePR:
    session_id: str
    method: str = "squash"


@dataclass(frozen=True, slots=True)
class SendPendingMessage:
    """Deliver the queued pending message now if the agent is idle."""

    session_id: str


@dataclass(frozen=True, slots=True)
class NotifySupervisor:
    supervisor_id: str
    child_id: str
    prompt: str


@dataclass(frozen=True, slots=True)
class Notify:
    level: NotificationLevel
    text: str
    session_id: str = ""


@dataclass(frozen=True, slots=True)
class AppendTranscript:
    """Add a progress line to the session's chat history."""

    session_id: str
    text: str


@dataclass(frozen=True, slots=True)
class Emit:
    """Feed *event* back into the machine for the same session."""

    event: object


@dataclass(frozen=True, slots=True)
class CleanupSession:
    session_id: str


PipelineCommand = (
    RunTests
    | SchedulePoll
    | FetchReviewComments
    | CreatePR
    | CreatePRForTool
    | PushBranchForTool
    | FetchReviewCommentsForTool
    | CreateChildSession
    | MergeChildToParent
    | SendToolResponse
    | MergePR
    | SendPendingMessage
    | NotifySupervisor
    | Notify
    | AppendTranscript
    | Emit
    | CleanupSession
)
