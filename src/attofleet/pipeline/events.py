"""Events that drive the per-session completion pipeline.

Every event names the session it belongs to. The set is closed: the
machine's dispatch table has exactly one handler per class listed in
:data:`EVENT_TYPES`.
"""

from __future__ import annotations

from dataclasses import dataclass

from attofleet.protocol import (
    CreateChildToolRequest,
    CreatePRToolRequest,
    GetReviewCommentsToolRequest,
    ListChildrenToolRequest,
    MergeChildToolRequest,
    PushBranchToolRequest,
)
from attofleet.types import CIStatus, ReviewDecision


@dataclass(frozen=True, slots=True)
class SessionCompleted:
    """The agent finished producing a reply."""

    session_id: str


@dataclass(frozen=True, slots=True)
class TestRunResult:
    __test__ = False  # not a pytest class

    session_id: str
    exit_code: int
    iteration: int
    output: str = ""


@dataclass(frozen=True, slots=True)
class SessionPipelineComplete:
    session_id: str
    tests_passed: bool


@dataclass(frozen=True, slots=True)
class AutonomousLimitReached:
    """A turn or duration cap stopped an autonomous session."""

    session_id: str
    reason: str = ""  # "turn_limit", "duration_limit" or free text


@dataclass(frozen=True, slots=True)
class AutoMergePollResult:
    session_id: str
    review_decision: ReviewDecision
    comment_count: int
    ci_status: CIStatus
    attempt: int


@dataclass(frozen=True, slots=True)
class AutoMergeResult:
    session_id: str
    error: str = ""


@dataclass(frozen=True, slots=True)
class AutoPRCommentsFetched:
    session_id: str
    prompt: str = ""
    comment_count: int = 0
    error: str = ""


@dataclass(frozen=True, slots=True)
class CreatePRRequest:
    """``create_pr`` tool call routed from the agent."""

    session_id: str
    request: CreatePRToolRequest


@dataclass(frozen=True, slots=True)
class PushBranchRequest:
    """``push_branch`` tool call routed from the agent."""

    session_id: str
    request: PushBranchToolRequest


@dataclass(frozen=True, slots=True)
class PRCreatedFromTool:
    session_id: str
    pr_url: str = ""


@dataclass(frozen=True, slots=True)
class AutoPRCreated:
    """Outcome of a PR the pipeline opened on its own."""

    session_id: str
    pr_url: str = ""
    error: str = ""


@dataclass(frozen=True, slots=True)
class GetReviewCommentsRequest:
    """``get_review_comments`` tool call routed from the agent."""

    session_id: str
    request: GetReviewCommentsToolRequest


@dataclass(frozen=True, slots=True)
class CreateChildRequest:
    """``create_child_session`` tool call from a supervisor."""

    session_id: str
    request: CreateChildToolRequest


@dataclass(frozen=True, slots=True)
class ListChildrenRequest:
    session_id: str
    request: ListChildrenToolRequest


@dataclass(frozen=True, slots=True)
class MergeChildRequest:
    """``merge_child_to_parent`` tool call from a supervisor."""

    session_id: str
    request: MergeChildToolRequest


@dataclass(frozen=True, slots=True)
class MergeChildComplete:
    """Outcome of merging a child branch; keyed by the supervisor's session."""

    session_id: str
    child_id: str
    request_id: str
    message: str = ""
    error: str = ""


PipelineEvent = (
    SessionCompleted
    | TestRunResult
    | SessionPipelineComplete
    | AutonomousLimitReached
    | AutoMergePollResult
    | AutoMergeResult
    | AutoPRCommentsFetched
    | CreatePRRequest
    | PushBranchRequest
    | PRCreatedFromTool
    | AutoPRCreated
    | GetReviewCommentsRequest
    | CreateChildRequest
    | ListChildrenRequest
    | MergeChildRequest
    | MergeChildComplete
)

EVENT_TYPES: tuple[type, ...] = (
    SessionCompleted,
    TestRunResult,
    SessionPipelineComplete,
    AutonomousLimitReached,
    AutoMergePollResult,
    AutoMergeResult,
    AutoPRCommentsFetched,
    CreatePRRequest,
    PushBranchRequest,
    PRCreatedFromTool,
    AutoPRCreated,
    GetReviewCommentsRequest,
    CreateChildRequest,
    ListChildrenRequest,
    MergeChildRequest,
    MergeChildComplete,
)
