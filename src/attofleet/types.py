"""Shared value types for sessions and the completion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class MergeType(StrEnum):
    """What git/PR operation is in flight for a session."""

    NONE = "none"
    MERGE = "merge"      # local merge into the base branch
    PR = "pr"            # commit, push and open a pull request
    PUSH = "push"        # push new commits to an existing PR
    PARENT = "parent"    # merge a child back into its parent session


class ReviewDecision(StrEnum):
    """Aggregate review state of a pull request."""

    NONE = "none"
    REQUIRED = "required"
    CHANGES_REQUESTED = "changes_requested"
    APPROVED = "approved"


class CIStatus(StrEnum):
    """Aggregate status of the checks attached to a pull request."""

    NONE = "none"        # no checks configured
    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"


class NotificationLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True)
class Message:
    """One turn of an agent conversation."""

    role: str
    content: str


@dataclass(slots=True)
class DetectedOption:
    """A numbered choice the agent offered in its last reply."""

    number: int
    text: str


@dataclass(slots=True)
class TodoItem:
    content: str
    status: str = "pending"  # pending | in_progress | completed
    active_form: str = ""


@dataclass(slots=True)
class TodoList:
    items: list[TodoItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)
