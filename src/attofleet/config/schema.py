"""Configuration schema for attofleet YAML files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from attofleet.defaults import (
    AUTO_MAX_DURATION_MIN,
    AUTO_MAX_TURNS,
    AUTO_MERGE_POLL_INTERVAL_SECONDS,
    DEFAULT_CONVERSATION_DIR,
    DEFAULT_TEST_MAX_RETRIES,
    MAX_AUTO_MERGE_POLL_ATTEMPTS,
)


@dataclass(slots=True)
class RepoConfig:
    path: str
    test_command: str = ""  # empty = no verification, sessions pass trivially
    test_max_retries: int = DEFAULT_TEST_MAX_RETRIES
    auto_merge: bool = False
    merge_method: str = "squash"  # squash | merge | rebase
    allowed_tools: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AutomationConfig:
    max_auto_merge_poll_attempts: int = MAX_AUTO_MERGE_POLL_ATTEMPTS
    auto_merge_poll_interval_seconds: float = AUTO_MERGE_POLL_INTERVAL_SECONDS
    auto_broadcast_pr: bool = False
    auto_cleanup_merged: bool = False
    auto_max_turns: int = AUTO_MAX_TURNS
    auto_max_duration_min: int = AUTO_MAX_DURATION_MIN
    notifications_enabled: bool = False


@dataclass(slots=True)
class LoggingConfig:
    debug: bool = False
    json_output: bool = False


@dataclass(slots=True)
class FleetConfig:
    version: int = 1
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    repos: list[RepoConfig] = field(default_factory=list)
    conversation_dir: str = DEFAULT_CONVERSATION_DIR

    def repo(self, path: str) -> RepoConfig:
        """Settings for *path*, or defaults when the repo is not configured."""
        wanted = _norm(path)
        for repo in self.repos:
            if _norm(repo.path) == wanted:
                return repo
        return RepoConfig(path=path)

    def test_command(self, repo_path: str) -> str:
        return self.repo(repo_path).test_command.strip()

    def test_max_retries(self, repo_path: str) -> int:
        return self.repo(repo_path).test_max_retries

    def auto_merge_enabled(self, repo_path: str) -> bool:
        return self.repo(repo_path).auto_merge

    def allowed_tools(self, repo_path: str) -> list[str]:
        return list(self.repo(repo_path).allowed_tools)


def _norm(path: str) -> str:
    return os.path.normpath(os.path.expanduser(path)) if path else ""
