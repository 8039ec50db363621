"""Per-session completion pipeline.

    agent reply -> tests -> (retry)* -> PR -> poll(review, CI, comments) -> merge

There is no explicit state enum: where a session is in the pipeline is read
from its :class:`SessionRecord` flags and its transient
:class:`SessionState`. :meth:`PipelineMachine.handle` evaluates one event,
applies the record/state updates that event implies and returns the
outward commands. It never raises and never performs I/O; unknown session
IDs are absorbed silently since they mean the session was deleted
mid-flight.

Callers must feed events for one session one at a time, in arrival order.
The dispatcher guarantees that.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from attofleet.config.schema import FleetConfig
from attofleet.logger import get_logger, session_logger
from attofleet.pipeline import prompts
from attofleet.pipeline.broadcast import BroadcastCoordinator
from attofleet.pipeline.commands import (
    AppendTranscript,
    CleanupSession,
    CreateChildSession,
    CreatePR,
    CreatePRForTool,
    Emit,
    FetchReviewComments,
    FetchReviewCommentsForTool,
    MergeChildToParent,
    MergePR,
    Notify,
    NotifySupervisor,
    PushBranchForTool,
    RunTests,
    SchedulePoll,
    SendPendingMessage,
    SendToolResponse,
)
from attofleet.pipeline.events import (
    EVENT_TYPES,
    AutoMergePollResult,
    AutoMergeResult,
    AutonomousLimitReached,
    AutoPRCommentsFetched,
    AutoPRCreated,
    CreateChildRequest,
    CreatePRRequest,
    GetReviewCommentsRequest,
    ListChildrenRequest,
    MergeChildComplete,
    MergeChildRequest,
    PRCreatedFromTool,
    PushBranchRequest,
    SessionCompleted,
    SessionPipelineComplete,
    TestRunResult,
)
from attofleet.pipeline.guard import PollGuard
from attofleet.protocol import (
    ChildSessionInfo,
    CreateChildToolResponse,
    CreatePRToolResponse,
    GetReviewCommentsToolResponse,
    ListChildrenToolResponse,
    MergeChildToolResponse,
    PushBranchToolResponse,
)
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.runner import AgentRunner
from attofleet.sessions.state import SessionStateStore
from attofleet.types import CIStatus, NotificationLevel, ReviewDecision

log = get_logger(__name__)

Command = Any
RunnerLookup = Callable[[str], AgentRunner | None]

# Review states that still need a human before the PR can merge
_AWAITING_REVIEW = frozenset({ReviewDecision.NONE, ReviewDecision.REQUIRED, ReviewDecision.CHANGES_REQUESTED})


class PipelineMachine:
    """Event handlers for the completion pipeline, one per event class."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: SessionStateStore,
        config: FleetConfig | None = None,
        *,
        runner_lookup: RunnerLookup | None = None,
        guard: PollGuard | None = None,
        broadcast: BroadcastCoordinator | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._config = config or FleetConfig()
        self._runner_lookup = runner_lookup or (lambda _sid: None)
        self._guard = guard or PollGuard(store)
        self._broadcast = broadcast or BroadcastCoordinator(registry, store, self._runner_lookup)

        self._handlers: dict[type, Callable[[Any], list[Command]]] = {
            SessionCompleted: self._on_session_completed,
            TestRunResult: self._on_test_run_result,
            SessionPipelineComplete: self._on_pipeline_complete,
            AutonomousLimitReached: self._on_autonomous_limit,
            AutoMergePollResult: self._on_poll_result,
            AutoMergeResult: self._on_merge_result,
            AutoPRCommentsFetched: self._on_comments_fetched,
            CreatePRRequest: self._on_create_pr_request,
            PushBranchRequest: self._on_push_branch_request,
            PRCreatedFromTool: self._on_pr_created_from_tool,
            AutoPRCreated: self._on_auto_pr_created,
            GetReviewCommentsRequest: self._on_review_comments_request,
            CreateChildRequest: self._on_create_child_request,
            ListChildrenRequest: self._on_list_children_request,
            MergeChildRequest: self._on_merge_child_request,
            MergeChildComplete: self._on_merge_child_complete,
        }
        missing = set(EVENT_TYPES) - set(self._handlers)
        if missing:
            raise TypeError(f"No handler for events: {sorted(t.__name__ for t in missing)}")

    @property
    def guard(self) -> PollGuard:
        return self._guard

    def handle(self, event: Any) -> list[Command]:
        """Evaluate *event* and return the commands it produces."""
        handler = self._handlers.get(type(event))
        if handler is None:
            log.warning("unhandled pipeline event", event_type=type(event).__name__)
            return []
        try:
            return handler(event)
        except Exception:
            log.exception(
                "pipeline handler failed",
                event_type=type(event).__name__,
                session_id=getattr(event, "session_id", ""),
            )
            return []

    # ------------------------------------------------------------------
    # Agent reply and tests
    # ------------------------------------------------------------------

    def _on_session_completed(self, event: SessionCompleted) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        slog = session_logger(__name__, sess.id)

        command = self._config.test_command(sess.repo_path)
        if command:
            iteration = self._store.get_test_iteration(sess.id) + 1
            slog.info("session completed, running tests", iteration=iteration)
            return [RunTests(sess.id, sess.worktree, command, iteration)]

        slog.info("session completed, no test command configured")
        return [Emit(SessionPipelineComplete(sess.id, tests_passed=True))]

    def _on_test_run_result(self, event: TestRunResult) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None or not sess.autonomous:
            return []
        slog = session_logger(__name__, sess.id)

        if event.exit_code == 0:
            slog.info("tests passed", iteration=event.iteration)
            self._store.set_test_iteration(sess.id, 0)
            return [Emit(SessionPipelineComplete(sess.id, tests_passed=True))]

        max_retries = self._config.test_max_retries(sess.repo_path)
        if event.iteration < max_retries:
            slog.info("tests failed, asking agent to fix", iteration=event.iteration, max_retries=max_retries)
            self._store.set_test_iteration(sess.id, event.iteration)
            self._store.set_pending_message(
                sess.id, prompts.format_test_failure_prompt(event.output, event.iteration, max_retries),
            )
            return [SendPendingMessage(sess.id)]

        slog.warning("tests still failing, retries exhausted", iteration=event.iteration)
        self._store.set_test_iteration(sess.id, 0)
        return [
            Notify(
                NotificationLevel.WARNING,
                f"Tests failed after {event.iteration} attempt(s): {sess.display_name}",
                sess.id,
            ),
            Emit(SessionPipelineComplete(sess.id, tests_passed=False)),
        ]

    # ------------------------------------------------------------------
    # Pipeline completion
    # ------------------------------------------------------------------

    def _on_pipeline_complete(self, event: SessionPipelineComplete) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        slog = session_logger(__name__, sess.id)

        commands: list[Command] = self._broadcast_prs(sess)

        if self._config.automation.notifications_enabled:
            status = "completed" if event.tests_passed else "completed (tests failed)"
            commands.append(Notify(NotificationLevel.INFO, f"{sess.display_name} {status}", sess.id))

        if sess.supervisor_id:
            slog.info("notifying supervisor of child completion", supervisor_id=sess.supervisor_id)
            commands.append(self._supervisor_notification(sess, event.tests_passed))
            return commands

        if sess.autonomous and event.tests_passed and not sess.pr_created and not sess.is_supervisor:
            if any(isinstance(c, CreatePR) and c.session_id == sess.id for c in commands):
                return commands
            if self._store.is_merging(sess.id):
                slog.debug("merge already in progress, skipping auto-PR")
                return commands
            slog.info("pipeline complete, auto-creating PR")
            commands.append(AppendTranscript(sess.id, prompts.auto_line(f"Creating PR for {sess.branch}...")))
            commands.append(CreatePR(sess.id))
            return commands

        if (
            sess.autonomous
            and sess.pr_created
            and not sess.pr_merged
            and self._config.auto_merge_enabled(sess.repo_path)
        ):
            slog.info("restarting auto-merge polling after completion", branch=sess.branch)
            commands.extend(self._start_polling(sess.id))

        return commands

    def _broadcast_prs(self, sess: SessionRecord) -> list[Command]:
        group = sess.broadcast_group_id
        if not group or not self._config.automation.auto_broadcast_pr:
            return []
        if not self._broadcast.all_complete(group):
            return []

        needing = [m for m in self._broadcast.members_needing_pr(group) if not self._store.is_merging(m.id)]
        if not needing:
            return []
        log.info("broadcast group complete, creating PRs", group_id=group, sessions=len(needing))
        commands: list[Command] = [
            Notify(NotificationLevel.INFO, f"Broadcast complete: creating PRs for {len(needing)} sessions"),
        ]
        for member in needing:
            commands.append(AppendTranscript(member.id, prompts.auto_line(f"Creating PR for {member.branch}...")))
            commands.append(CreatePR(member.id))
        return commands

    def _supervisor_notification(self, child: SessionRecord, tests_passed: bool) -> NotifySupervisor:
        children = self._registry.children_of(child.supervisor_id)
        completed = sum(1 for c in children if c.id == child.id or not self._broadcast.is_busy(c.id))
        prompt = prompts.format_supervisor_prompt(child.display_name, tests_passed, completed, len(children))
        return NotifySupervisor(child.supervisor_id, child.id, prompt)

    def _on_autonomous_limit(self, event: AutonomousLimitReached) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        session_logger(__name__, sess.id).warning("autonomous session stopped", reason=event.reason)

        self._registry.set_autonomous(sess.id, False)
        line = prompts.format_limit_line(
            event.reason,
            max_turns=self._config.automation.auto_max_turns,
            max_minutes=self._config.automation.auto_max_duration_min,
        )
        commands: list[Command] = [AppendTranscript(sess.id, line)]
        if self._config.automation.notifications_enabled:
            commands.append(Notify(NotificationLevel.INFO, f"{sess.display_name} (autonomous limit reached)", sess.id))
        commands.append(
            Notify(NotificationLevel.WARNING, f"Autonomous session stopped: {event.reason}", sess.id),
        )
        return commands

    # ------------------------------------------------------------------
    # Auto-merge polling
    # ------------------------------------------------------------------

    def _start_polling(self, session_id: str) -> list[Command]:
        if not self._guard.start_polling(session_id):
            return []
        return [
            AppendTranscript(session_id, prompts.auto_line("Waiting for review...")),
            SchedulePoll(session_id, attempt=1, delay=self._config.automation.auto_merge_poll_interval_seconds),
        ]

    def _on_poll_result(self, event: AutoMergePollResult) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            self._guard.clear_polling(event.session_id)
            return []
        slog = session_logger(__name__, sess.id)

        if sess.pr_merged:
            slog.debug("PR already merged, stopping poll")
            self._guard.clear_polling(sess.id)
            return []
        if not self._guard.is_polling(sess.id):
            slog.debug("poll loop was stopped, dropping stale result", attempt=event.attempt)
            return []

        if event.comment_count > sess.pr_comments_addressed_count:
            slog.info(
                "new review comments, addressing before merge",
                comments=event.comment_count,
                addressed=sess.pr_comments_addressed_count,
            )
            self._registry.update_pr_comments_addressed_count(sess.id, event.comment_count)
            self._guard.clear_polling(sess.id)
            return [
                AppendTranscript(sess.id, prompts.auto_line("Review comments detected, addressing before merge...")),
                FetchReviewComments(sess.id, event.comment_count),
            ]

        if event.review_decision in _AWAITING_REVIEW:
            return self._poll_again_or_give_up(sess, event.attempt, "review")

        if event.ci_status == CIStatus.FAILING:
            slog.warning("CI checks failed, skipping auto-merge")
            self._guard.clear_polling(sess.id)
            return [
                AppendTranscript(sess.id, prompts.auto_line("CI checks failed - skipping auto-merge")),
                Notify(NotificationLevel.ERROR, f"CI failed for {sess.display_name}, auto-merge skipped", sess.id),
            ]
        if event.ci_status == CIStatus.PENDING:
            return self._poll_again_or_give_up(sess, event.attempt, "CI")

        slog.info("PR approved and CI green, merging", ci_status=str(event.ci_status))
        return [MergePR(sess.id, method=self._config.repo(sess.repo_path).merge_method)]

    def _poll_again_or_give_up(self, sess: SessionRecord, attempt: int, waiting_on: str) -> list[Command]:
        max_attempts = self._config.automation.max_auto_merge_poll_attempts
        if attempt >= max_attempts:
            session_logger(__name__, sess.id).warning("auto-merge polling timed out", waiting_on=waiting_on, attempts=attempt)
            self._guard.clear_polling(sess.id)
            return [
                Notify(
                    NotificationLevel.WARNING,
                    f"Auto-merge timed out waiting for {waiting_on}: {sess.display_name}",
                    sess.id,
                ),
            ]
        delay = self._config.automation.auto_merge_poll_interval_seconds
        return [SchedulePoll(sess.id, attempt=attempt + 1, delay=delay)]

    def _on_merge_result(self, event: AutoMergeResult) -> list[Command]:
        self._guard.clear_polling(event.session_id)
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        slog = session_logger(__name__, sess.id)

        if event.error:
            slog.error("auto-merge failed", error=event.error)
            return [
                AppendTranscript(sess.id, prompts.auto_line(f"Merge failed: {event.error}")),
                Notify(NotificationLevel.ERROR, f"Auto-merge failed: {event.error}", sess.id),
            ]

        slog.info("PR merged")
        self._registry.mark_pr_merged(sess.id)
        commands: list[Command] = [
            AppendTranscript(sess.id, prompts.auto_line("PR merged successfully!")),
            Notify(NotificationLevel.SUCCESS, f"PR merged: {sess.display_name}", sess.id),
        ]
        if self._config.automation.auto_cleanup_merged:
            commands.append(CleanupSession(sess.id))
        return commands

    def _on_comments_fetched(self, event: AutoPRCommentsFetched) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        slog = session_logger(__name__, sess.id)
        if event.error:
            slog.warning("failed to fetch PR review comments", error=event.error)
            return []
        if not event.prompt:
            return []

        slog.info("sending PR review comments to agent")
        self._store.set_pending_message(sess.id, event.prompt)
        return [
            AppendTranscript(sess.id, prompts.auto_line("Addressing PR review comments...")),
            SendPendingMessage(sess.id),
        ]

    # ------------------------------------------------------------------
    # Tool-initiated git operations
    # ------------------------------------------------------------------

    def _on_create_pr_request(self, event: CreatePRRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            return []
        if self._registry.get(event.session_id) is None:
            response = CreatePRToolResponse(id=event.request.id, error="Session not found")
            return [SendToolResponse(event.session_id, response)]
        return [CreatePRForTool(event.session_id, event.request)]

    def _on_push_branch_request(self, event: PushBranchRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            return []
        if self._registry.get(event.session_id) is None:
            response = PushBranchToolResponse(id=event.request.id, error="Session not found")
            return [SendToolResponse(event.session_id, response)]
        return [PushBranchForTool(event.session_id, event.request)]

    def _on_pr_created_from_tool(self, event: PRCreatedFromTool) -> list[Command]:
        if self._registry.mark_pr_created(event.session_id):
            session_logger(__name__, event.session_id).info("PR created by agent", pr_url=event.pr_url)
        return []

    def _on_auto_pr_created(self, event: AutoPRCreated) -> list[Command]:
        sess = self._registry.get(event.session_id)
        if sess is None:
            return []
        slog = session_logger(__name__, sess.id)

        if event.error:
            slog.error("auto PR creation failed", error=event.error)
            commands: list[Command] = [Notify(NotificationLevel.ERROR, f"PR creation failed: {event.error}", sess.id)]
        else:
            slog.info("auto PR created", pr_url=event.pr_url)
            self._registry.mark_pr_created(sess.id)
            commands = [Notify(NotificationLevel.SUCCESS, f"PR created: {event.pr_url or sess.display_name}", sess.id)]
            if sess.autonomous and self._config.auto_merge_enabled(sess.repo_path):
                commands.extend(self._start_polling(sess.id))

        # Messages sent while the PR was being opened were queued behind it
        if self._store.peek_pending_message(sess.id):
            commands.append(SendPendingMessage(sess.id))
        return commands

    def _on_review_comments_request(self, event: GetReviewCommentsRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            return []
        if self._registry.get(event.session_id) is None:
            response = GetReviewCommentsToolResponse(id=event.request.id, error="Session not found")
            return [SendToolResponse(event.session_id, response)]
        return [FetchReviewCommentsForTool(event.session_id, event.request)]

    # ------------------------------------------------------------------
    # Supervisor tools
    # ------------------------------------------------------------------

    def _on_create_child_request(self, event: CreateChildRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            session_logger(__name__, event.session_id).warning("create child request for unknown session")
            return []
        sess = self._registry.get(event.session_id)
        if sess is None or not sess.is_supervisor:
            response = CreateChildToolResponse(id=event.request.id, error="Session is not a supervisor")
            return [SendToolResponse(event.session_id, response)]
        return [CreateChildSession(sess.id, event.request)]

    def _on_list_children_request(self, event: ListChildrenRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            return []
        children = [
            ChildSessionInfo(id=child.id, branch=child.branch, status=self._child_status(child))
            for child in sorted(self._registry.children_of(event.session_id), key=lambda c: c.created_at)
        ]
        response = ListChildrenToolResponse(id=event.request.id, children=children)
        return [SendToolResponse(event.session_id, response)]

    def _child_status(self, child: SessionRecord) -> str:
        runner = self._runner_lookup(child.id)
        if runner is not None and runner.is_streaming():
            return "running"
        if child.merged_to_parent:
            return "merged"
        if child.pr_created:
            return "pr_created"
        if self._store.is_waiting(child.id):
            return "running"
        return "idle"

    def _on_merge_child_request(self, event: MergeChildRequest) -> list[Command]:
        if self._runner_lookup(event.session_id) is None:
            session_logger(__name__, event.session_id).warning("merge child request for unknown session")
            return []

        def _refuse(error: str) -> list[Command]:
            return [SendToolResponse(event.session_id, MergeChildToolResponse(id=event.request.id, error=error))]

        if self._registry.get(event.session_id) is None:
            return _refuse("Supervisor session not found")
        child = self._registry.get(event.request.child_session_id)
        if child is None:
            return _refuse("Child session not found")
        if child.supervisor_id != event.session_id:
            return _refuse("Child session does not belong to this supervisor")
        if child.merged_to_parent:
            return _refuse("Child session already merged")

        session_logger(__name__, event.session_id).info(
            "merging child into parent", child_id=child.id, child_branch=child.branch,
        )
        return [MergeChildToParent(event.session_id, child.id, event.request.id)]

    def _on_merge_child_complete(self, event: MergeChildComplete) -> list[Command]:
        slog = session_logger(__name__, event.session_id)
        if event.error:
            slog.error("merge child failed", child_id=event.child_id, error=event.error)
            response = MergeChildToolResponse(id=event.request_id, error=event.error)
        else:
            slog.info("merge child succeeded", child_id=event.child_id)
            self._registry.mark_merged_to_parent(event.child_id)
            response = MergeChildToolResponse(id=event.request_id, success=True, message=event.message)
        commands: list[Command] = [SendToolResponse(event.session_id, response)]

        # The child's own messages were held while its branch was merging
        if self._store.peek_pending_message(event.child_id):
            commands.append(SendPendingMessage(event.child_id))
        return commands
