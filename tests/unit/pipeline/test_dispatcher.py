"""End-to-end tests for PipelineDispatcher with in-memory collaborators."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path

import pytest

from attofleet.config.schema import AutomationConfig, FleetConfig, RepoConfig
from attofleet.errors import GitCommandError
from attofleet.pipeline.dispatcher import PipelineDispatcher
from attofleet.git.worktree import session_worktree_path
from attofleet.pipeline.events import (
    AutonomousLimitReached,
    CreateChildRequest,
    CreatePRRequest,
    GetReviewCommentsRequest,
    MergeChildRequest,
    PushBranchRequest,
    TestRunResult,
)
from attofleet.protocol import (
    CreateChildToolRequest,
    CreatePRToolRequest,
    GetReviewCommentsToolRequest,
    MergeChildToolRequest,
    PushBranchToolRequest,
    ReviewComment,
)
from attofleet.sessions.manager import SessionManager
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.state import SessionStateStore
from attofleet.types import CIStatus, ReviewDecision
from tests.conftest import REPO
from tests.helpers import FakePRService, RecordingNotifier, RunnerFactoryStub


class ScriptedTests:
    """Test runner that answers with queued exit codes."""

    def __init__(self, *exit_codes: int) -> None:
        self.exit_codes = list(exit_codes) or [0]
        self.calls: list[tuple[str, int]] = []

    async def __call__(self, session_id: str, worktree: str, command: str, iteration: int) -> TestRunResult:
        self.calls.append((session_id, iteration))
        code = self.exit_codes.pop(0) if len(self.exit_codes) > 1 else self.exit_codes[0]
        return TestRunResult(session_id, code, iteration, output="1 failed" if code else "ok")


class FlakyCIService(FakePRService):
    async def check_ci_status(self, repo_path: str, branch: str) -> CIStatus:
        self.calls.append(("ci", branch))
        raise GitCommandError("gh pr checks failed")


@pytest.fixture
def pr_service() -> FakePRService:
    return FakePRService(reviews=[ReviewDecision.APPROVED], ci=[CIStatus.PASSING])


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def removed() -> list[tuple[str, str, str]]:
    return []


@pytest.fixture
def created() -> list[tuple[str, str, str, str]]:
    return []


@pytest.fixture
def make_dispatcher(
    manager: SessionManager,
    config: FleetConfig,
    pr_service: FakePRService,
    notifier: RecordingNotifier,
    removed: list[tuple[str, str, str]],
    created: list[tuple[str, str, str, str]],
) -> Callable[..., PipelineDispatcher]:
    def _make(
        tests: ScriptedTests | None = None,
        *,
        service: FakePRService | None = None,
        cfg: FleetConfig | None = None,
        registry_path: Path | None = None,
        creator: Callable[[str, str, str, str], None] | None = None,
    ) -> PipelineDispatcher:
        def _remove(repo_path: str, worktree: str, branch: str) -> bool:
            removed.append((repo_path, worktree, branch))
            return True

        def _create(repo_path: str, worktree: str, branch: str, start_point: str) -> None:
            created.append((repo_path, worktree, branch, start_point))

        return PipelineDispatcher(
            manager,
            service or pr_service,
            config=cfg or config,
            notifier=notifier,
            test_runner=tests or ScriptedTests(0),
            worktree_remover=_remove,
            worktree_creator=creator or _create,
            registry_path=registry_path,
        )

    return _make


async def _drain(dispatcher: PipelineDispatcher) -> None:
    await asyncio.wait_for(dispatcher.join(), timeout=5)


async def _until(condition: Callable[[], bool]) -> None:
    async def _wait() -> None:
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout=5)


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


class TestAutonomousPipeline:
    @pytest.mark.asyncio
    async def test_reply_to_merged_pr(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        store: SessionStateStore,
        pr_service: FakePRService,
        notifier: RecordingNotifier,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        add_session("s1", autonomous=True)
        tests = ScriptedTests(0)
        dispatcher = make_dispatcher(tests)

        assert dispatcher.send_message("s1", "add a widget") is True
        await _drain(dispatcher)

        record = registry.get("s1")
        assert record is not None
        assert record.started and record.pr_created and record.pr_merged
        assert runner_factory.created["s1"].sent == ["add a widget"]
        assert tests.calls == [("s1", 1)]
        assert pr_service.count("create_pr") == 1
        assert pr_service.calls[-1] == ("merge", ("attofleet-s1", "squash"))
        assert store.get_auto_merge_polling("s1") is False
        assert store.is_merging("s1") is False
        assert any(t.startswith("PR merged") for t in notifier.texts("success"))
        assert "[AUTO] PR merged successfully!" in store.get_streaming_content("s1")
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_failing_tests_are_sent_back_to_agent(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        add_session("s1", autonomous=True)
        tests = ScriptedTests(1, 0)
        dispatcher = make_dispatcher(tests)

        dispatcher.send_message("s1", "implement it")
        await _drain(dispatcher)

        sent = runner_factory.created["s1"].sent
        assert len(sent) == 2
        assert sent[1].startswith("Tests failed (attempt 1/3).")
        assert "1 failed" in sent[1]
        assert tests.calls == [("s1", 1), ("s1", 2)]
        assert registry.get("s1").pr_merged is True  # type: ignore[union-attr]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_exhausted_retries_never_open_pr(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        pr_service: FakePRService,
        notifier: RecordingNotifier,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        add_session("s1", autonomous=True)
        tests = ScriptedTests(1)
        dispatcher = make_dispatcher(tests)

        dispatcher.send_message("s1", "implement it")
        await _drain(dispatcher)

        assert len(tests.calls) == 3
        assert len(runner_factory.created["s1"].sent) == 3
        assert pr_service.count("create_pr") == 0
        assert registry.get("s1").pr_created is False  # type: ignore[union-attr]
        assert any("Tests failed after 3 attempt(s)" in t for t in notifier.texts("warning"))
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_review_comments_addressed_before_merge(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        add_session("s1", autonomous=True)
        pr_service.comment_counts = [1]
        pr_service.comments = [ReviewComment(author="alice", body="Rename this", path="app.py", line=3)]
        dispatcher = make_dispatcher(ScriptedTests(0))

        dispatcher.send_message("s1", "implement it")
        await _drain(dispatcher)

        sent = runner_factory.created["s1"].sent
        assert len(sent) == 2
        assert "Rename this" in sent[1]
        names = [name for name, _ in pr_service.calls]
        assert names.index("fetch_comments") < names.index("merge")
        record = registry.get("s1")
        assert record is not None
        assert record.pr_merged and record.pr_comments_addressed_count == 1
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_merge_failure_is_reported(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        store: SessionStateStore,
        pr_service: FakePRService,
        notifier: RecordingNotifier,
    ) -> None:
        add_session("s1", autonomous=True)
        pr_service.merge_error = "merge conflict"
        dispatcher = make_dispatcher()

        dispatcher.send_message("s1", "go")
        await _drain(dispatcher)

        assert registry.get("s1").pr_merged is False  # type: ignore[union-attr]
        assert store.get_auto_merge_polling("s1") is False
        assert notifier.texts("error") == ["Auto-merge failed: merge conflict"]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_poll_errors_fall_back_to_pending(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        notifier: RecordingNotifier,
    ) -> None:
        add_session("s1", autonomous=True)
        service = FlakyCIService(reviews=[ReviewDecision.APPROVED])
        dispatcher = make_dispatcher(service=service)

        dispatcher.send_message("s1", "go")
        await _drain(dispatcher)

        assert service.count("ci") == 3
        assert service.count("merge") == 0
        assert registry.get("s1").pr_merged is False  # type: ignore[union-attr]
        assert any("timed out waiting for CI" in t for t in notifier.texts("warning"))
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_pr_creation_failure(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        store: SessionStateStore,
        pr_service: FakePRService,
        notifier: RecordingNotifier,
    ) -> None:
        add_session("s1", autonomous=True)
        pr_service.create_error = "nothing to commit"
        dispatcher = make_dispatcher()

        dispatcher.send_message("s1", "go")
        await _drain(dispatcher)

        assert registry.get("s1").pr_created is False  # type: ignore[union-attr]
        assert store.is_merging("s1") is False
        assert notifier.texts("error") == ["PR creation failed: nothing to commit"]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_merged_session_auto_cleanup(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        store: SessionStateStore,
        notifier: RecordingNotifier,
        runner_factory: RunnerFactoryStub,
        removed: list[tuple[str, str, str]],
        tmp_path: Path,
    ) -> None:
        cfg = FleetConfig(
            automation=AutomationConfig(
                max_auto_merge_poll_attempts=3, auto_merge_poll_interval_seconds=0.0, auto_cleanup_merged=True,
            ),
            repos=[RepoConfig(path=REPO, test_command="pytest -q", auto_merge=True)],
        )
        add_session("s1", autonomous=True)
        add_session("child", parent_id="s1")
        registry_path = tmp_path / "sessions.json"
        dispatcher = make_dispatcher(cfg=cfg, registry_path=registry_path)

        dispatcher.send_message("s1", "go")
        await _drain(dispatcher)

        assert "s1" not in registry
        assert registry.get("child").parent_id == ""  # type: ignore[union-attr]
        assert removed == [(REPO, "/worktrees/s1", "attofleet-s1")]
        assert runner_factory.created["s1"].stopped
        assert store.get_if_exists("s1") is None
        assert notifier.texts("info")[-1] == "Auto-cleaned: attofleet-s1 (PR merged)"
        saved = json.loads(registry_path.read_text(encoding="utf-8"))
        assert [s["id"] for s in saved["sessions"]] == ["child"]
        await dispatcher.aclose()


# ---------------------------------------------------------------------------
# Message delivery
# ---------------------------------------------------------------------------


class TestMessages:
    @pytest.mark.asyncio
    async def test_busy_agent_queues_pending_message(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        store: SessionStateStore,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        sess = add_session("s1")
        manager.select(sess)
        runner = runner_factory.created["s1"]
        runner.gate = asyncio.Event()
        dispatcher = make_dispatcher()

        assert dispatcher.send_message("s1", "first") is True
        await asyncio.sleep(0)
        assert store.is_waiting("s1") is True
        assert dispatcher.send_message("s1", "second") is False
        assert store.peek_pending_message("s1") == "second"

        runner.gate.set()
        await _drain(dispatcher)

        assert runner.sent == ["first", "second"]
        assert store.peek_pending_message("s1") == ""
        assert store.is_waiting("s1") is False
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_agent_error_is_notified(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        store: SessionStateStore,
        notifier: RecordingNotifier,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        sess = add_session("s1", autonomous=True)
        manager.select(sess)
        runner_factory.created["s1"].fail_with = RuntimeError("process exited")
        dispatcher = make_dispatcher()

        dispatcher.send_message("s1", "go")
        await _drain(dispatcher)

        assert store.is_waiting("s1") is False
        assert notifier.texts("error") == ["Agent error: process exited"]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_supervisor_receives_child_summary(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        add_session("sup", is_supervisor=True)
        add_session("c1", autonomous=True, supervisor_id="sup")
        dispatcher = make_dispatcher()

        dispatcher.send_message("c1", "build the api")
        await _drain(dispatcher)

        (prompt,) = runner_factory.created["sup"].sent
        assert prompt.startswith("Child session 'attofleet-c1' completed successfully.")
        assert pr_service.count("create_pr") == 0
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_autonomous_limit_stops_pipeline(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        registry: SessionRegistry,
        store: SessionStateStore,
        notifier: RecordingNotifier,
    ) -> None:
        add_session("s1", autonomous=True)
        dispatcher = make_dispatcher()

        dispatcher.submit(AutonomousLimitReached("s1", "turn_limit"))
        await _drain(dispatcher)

        assert registry.get("s1").autonomous is False  # type: ignore[union-attr]
        assert "[AUTONOMOUS LIMIT]" in store.get_streaming_content("s1")
        assert notifier.texts("warning") == ["Autonomous session stopped: turn_limit"]
        await dispatcher.aclose()


    @pytest.mark.asyncio
    async def test_message_sent_during_auto_pr_is_delivered_after_it(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        store: SessionStateStore,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1", autonomous=True))
        runner = runner_factory.created["s1"]
        pr_service.create_gate = asyncio.Event()
        dispatcher = make_dispatcher()

        dispatcher.send_message("s1", "add a widget")
        await _until(lambda: pr_service.count("create_pr") == 1)
        assert store.is_merging("s1") is True
        assert dispatcher.send_message("s1", "also update the docs") is False
        assert store.peek_pending_message("s1") == "also update the docs"

        pr_service.create_gate.set()
        await _drain(dispatcher)

        assert runner.sent[:2] == ["add a widget", "also update the docs"]
        assert store.peek_pending_message("s1") == ""
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_activate_sends_initial_message(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        store: SessionStateStore,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        sess = add_session("s1")
        store.set_initial_message("s1", "start on the parser")
        dispatcher = make_dispatcher()

        result = dispatcher.activate(sess)
        await _drain(dispatcher)

        assert result is not None
        assert result.initial_message == "start on the parser"
        assert runner_factory.created["s1"].sent == ["start on the parser"]
        assert store.peek_initial_message("s1") == ""
        assert store.peek_pending_message("s1") == ""

        dispatcher.activate(sess)
        await _drain(dispatcher)
        assert runner_factory.created["s1"].sent == ["start on the parser"]
        await dispatcher.aclose()


# ---------------------------------------------------------------------------
# Agent tool requests
# ---------------------------------------------------------------------------


class TestToolRequests:
    @pytest.mark.asyncio
    async def test_create_pr_tool_round_trip(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1"))
        dispatcher = make_dispatcher()

        dispatcher.submit(CreatePRRequest("s1", CreatePRToolRequest(id="req-1", title="Widgets")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["s1"].pr_responses
        assert response.id == "req-1"
        assert response.success is True
        assert response.pr_url == pr_service.pr_url
        assert registry.get("s1").pr_created is True  # type: ignore[union-attr]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_create_pr_tool_failure(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1"))
        pr_service.create_error = "gh: not authenticated"
        dispatcher = make_dispatcher()

        dispatcher.submit(CreatePRRequest("s1", CreatePRToolRequest(id="req-1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["s1"].pr_responses
        assert response.success is False
        assert response.error == "gh: not authenticated"
        assert registry.get("s1").pr_created is False  # type: ignore[union-attr]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_push_branch_tool(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1"))
        dispatcher = make_dispatcher()

        dispatcher.submit(PushBranchRequest("s1", PushBranchToolRequest(id="p1", commit_message="wip")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["s1"].push_responses
        assert response.id == "p1"
        assert response.success is True
        assert pr_service.count("push") == 1
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_request_without_runner_is_ignored(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        pr_service: FakePRService,
    ) -> None:
        add_session("s1")
        dispatcher = make_dispatcher()

        dispatcher.submit(PushBranchRequest("s1", PushBranchToolRequest(id="p1")))
        await _drain(dispatcher)

        assert pr_service.calls == []
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_review_comments_tool(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1"))
        pr_service.comments = [ReviewComment(author="ana", body="rename this", path="api.py", line=3)]
        dispatcher = make_dispatcher()

        dispatcher.submit(GetReviewCommentsRequest("s1", GetReviewCommentsToolRequest(id="r1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["s1"].comment_responses
        assert response.id == "r1"
        assert response.success is True
        assert [c.body for c in response.comments] == ["rename this"]
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_review_comments_tool_failure(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("s1"))
        pr_service.comments_error = "gh: HTTP 502"
        dispatcher = make_dispatcher()

        dispatcher.submit(GetReviewCommentsRequest("s1", GetReviewCommentsToolRequest(id="r1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["s1"].comment_responses
        assert response.success is False
        assert response.error == "Failed to fetch review comments: gh: HTTP 502"
        await dispatcher.aclose()


# ---------------------------------------------------------------------------
# Supervisor tools
# ---------------------------------------------------------------------------


class TestSupervisorTools:
    @pytest.mark.asyncio
    async def test_create_child_starts_it_on_the_task(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        runner_factory: RunnerFactoryStub,
        created: list[tuple[str, str, str, str]],
    ) -> None:
        manager.select(add_session("sup", is_supervisor=True))
        dispatcher = make_dispatcher()

        dispatcher.submit(CreateChildRequest("sup", CreateChildToolRequest(id="c-1", task="write the parser")))
        await _drain(dispatcher)

        response = runner_factory.created["sup"].child_responses[0]
        assert response.id == "c-1"
        assert response.success is True
        child = registry.get(response.child_id)
        assert child is not None
        assert child.branch == response.branch
        assert child.branch.startswith("attofleet-child-")
        assert child.supervisor_id == "sup" and child.parent_id == "sup"
        assert child.autonomous is True
        assert child.base_branch == "attofleet-sup"
        assert child.worktree == session_worktree_path(REPO, child.id)
        assert created == [(REPO, child.worktree, child.branch, "attofleet-sup")]

        task_prompt = runner_factory.created[child.id].sent[0]
        assert task_prompt.startswith("You are a child session")
        assert "Task: write the parser" in task_prompt
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_create_child_worktree_failure(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("sup", is_supervisor=True))

        def _fail(repo_path: str, worktree: str, branch: str, start_point: str) -> None:
            raise GitCommandError("fatal: invalid reference: attofleet-sup")

        dispatcher = make_dispatcher(creator=_fail)

        dispatcher.submit(CreateChildRequest("sup", CreateChildToolRequest(id="c-1", task="x")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["sup"].child_responses
        assert response.success is False
        assert response.error == "Failed to create child session: fatal: invalid reference: attofleet-sup"
        assert registry.children_of("sup") == []
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_merge_child_into_parent(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        store: SessionStateStore,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("sup", is_supervisor=True))
        add_session("c1", supervisor_id="sup")
        dispatcher = make_dispatcher()

        dispatcher.submit(MergeChildRequest("sup", MergeChildToolRequest(id="m1", child_session_id="c1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["sup"].merge_responses
        assert response.id == "m1"
        assert response.success is True
        assert response.message == "Successfully merged attofleet-c1 into attofleet-sup"
        assert pr_service.calls == [("merge_to_parent", ("attofleet-c1", "attofleet-sup"))]
        assert registry.get("c1").merged_to_parent is True  # type: ignore[union-attr]
        assert store.is_merging("c1") is False
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_merge_child_conflict_is_reported(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        registry: SessionRegistry,
        store: SessionStateStore,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("sup", is_supervisor=True))
        add_session("c1", supervisor_id="sup")
        pr_service.merge_child_error = "merge conflict in api.py"
        dispatcher = make_dispatcher()

        dispatcher.submit(MergeChildRequest("sup", MergeChildToolRequest(id="m1", child_session_id="c1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["sup"].merge_responses
        assert response.success is False
        assert response.error == "merge conflict in api.py"
        assert registry.get("c1").merged_to_parent is False  # type: ignore[union-attr]
        assert store.is_merging("c1") is False
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_merge_refused_while_child_is_busy(
        self,
        make_dispatcher: Callable[..., PipelineDispatcher],
        add_session: Callable[..., SessionRecord],
        manager: SessionManager,
        store: SessionStateStore,
        pr_service: FakePRService,
        runner_factory: RunnerFactoryStub,
    ) -> None:
        manager.select(add_session("sup", is_supervisor=True))
        add_session("c1", supervisor_id="sup")
        store.start_waiting("c1", None)
        dispatcher = make_dispatcher()

        dispatcher.submit(MergeChildRequest("sup", MergeChildToolRequest(id="m1", child_session_id="c1")))
        await _drain(dispatcher)

        (response,) = runner_factory.created["sup"].merge_responses
        assert response.error == "Child session is busy"
        assert pr_service.count("merge_to_parent") == 0
        assert store.is_waiting("c1") is True
        await dispatcher.aclose()
