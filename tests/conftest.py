"""Global test fixtures for attofleet."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from attofleet.config.schema import AutomationConfig, FleetConfig, RepoConfig
from attofleet.sessions.manager import SessionManager
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.state import SessionStateStore
from tests.helpers import RunnerFactoryStub

REPO = "/repos/widgets"


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def store() -> SessionStateStore:
    return SessionStateStore()


@pytest.fixture
def config() -> FleetConfig:
    return FleetConfig(
        automation=AutomationConfig(max_auto_merge_poll_attempts=3, auto_merge_poll_interval_seconds=0.0),
        repos=[RepoConfig(path=REPO, test_command="pytest -q", test_max_retries=3, auto_merge=True)],
    )


@pytest.fixture
def add_session(registry: SessionRegistry) -> Callable[..., SessionRecord]:
    """Register a session with sensible defaults; keyword overrides win."""

    def _add(session_id: str = "s1", **overrides: object) -> SessionRecord:
        fields: dict[str, object] = {
            "repo_path": REPO,
            "worktree": f"/worktrees/{session_id}",
            "branch": f"attofleet-{session_id}",
            "base_branch": "main",
            "name": session_id,
        }
        fields.update(overrides)
        record = SessionRecord(id=session_id, **fields)  # type: ignore[arg-type]
        registry.add(record)
        return record

    return _add


@pytest.fixture
def runner_factory() -> RunnerFactoryStub:
    return RunnerFactoryStub()


@pytest.fixture
def manager(
    registry: SessionRegistry,
    store: SessionStateStore,
    config: FleetConfig,
    runner_factory: RunnerFactoryStub,
) -> SessionManager:
    return SessionManager(registry, runner_factory, config=config, state_store=store)
