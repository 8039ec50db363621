"""Attofleet error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    GIT = "git"
    RUNNER = "runner"
    CANCELLATION = "cancellation"
    INTERNAL = "internal"


class FleetError(Exception):
    """Base error for all attofleet exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConfigError(FleetError):
    """Invalid or unreadable configuration."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)
        self.path = path


class SessionNotFoundError(FleetError):
    """A session ID does not resolve to a known session record."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", category=ErrorCategory.NOT_FOUND)
        self.session_id = session_id


class GitCommandError(FleetError):
    """A git or gh invocation exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        retryable: bool = False,
    ) -> None:
        super().__init__(message, category=ErrorCategory.GIT, retryable=retryable)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class RunnerError(FleetError):
    """The agent runner failed to deliver a message or response."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.RUNNER, retryable=False)
        self.session_id = session_id
