"""Request/response models exchanged with the agent's permission and tool layer."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AgentRequest(BaseModel):
    """Base for requests that the agent process is blocked on."""

    model_config = {"extra": "forbid"}

    id: str


class PermissionRequest(AgentRequest):
    tool: str
    description: str = ""
    arguments: dict[str, object] = Field(default_factory=dict)


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class QuestionRequest(AgentRequest):
    question: str
    options: list[QuestionOption] = Field(default_factory=list)


class PlanApprovalRequest(AgentRequest):
    plan: str


class CreatePRToolRequest(AgentRequest):
    title: str = ""


class CreatePRToolResponse(BaseModel):
    id: str
    success: bool = False
    pr_url: str = ""
    error: str = ""


class PushBranchToolRequest(AgentRequest):
    commit_message: str = ""


class PushBranchToolResponse(BaseModel):
    id: str
    success: bool = False
    error: str = ""


class ReviewComment(BaseModel):
    """A single review comment or review body on a pull request."""

    author: str = ""
    body: str = ""
    path: str = ""
    line: int = 0
    url: str = ""


class GetReviewCommentsToolRequest(AgentRequest):
    pass


class GetReviewCommentsToolResponse(BaseModel):
    id: str
    success: bool = False
    comments: list[ReviewComment] = Field(default_factory=list)
    error: str = ""


# ---------------------------------------------------------------------------
# Supervisor tools
# ---------------------------------------------------------------------------


class CreateChildToolRequest(AgentRequest):
    task: str


class CreateChildToolResponse(BaseModel):
    id: str
    success: bool = False
    child_id: str = ""
    branch: str = ""
    error: str = ""


class ListChildrenToolRequest(AgentRequest):
    pass


class ChildSessionInfo(BaseModel):
    id: str
    branch: str = ""
    status: str = "idle"  # idle, running, pr_created or merged


class ListChildrenToolResponse(BaseModel):
    id: str
    children: list[ChildSessionInfo] = Field(default_factory=list)


class MergeChildToolRequest(AgentRequest):
    child_session_id: str


class MergeChildToolResponse(BaseModel):
    id: str
    success: bool = False
    message: str = ""
    error: str = ""


ToolResponse = (
    CreatePRToolResponse
    | PushBranchToolResponse
    | GetReviewCommentsToolResponse
    | CreateChildToolResponse
    | ListChildrenToolResponse
    | MergeChildToolResponse
)
