"""Asyncio executor for the completion pipeline.

Events for one session are handled strictly in arrival order by that
session's worker task; different sessions progress concurrently. Anything
slow (tests, PR host calls, poll delays, agent replies) runs as a
background task whose outcome re-enters through :meth:`submit`.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

from attofleet.config.schema import FleetConfig
from attofleet.defaults import (
    BRANCH_PREFIX,
    CI_QUERY_TIMEOUT,
    COMMENTS_QUERY_TIMEOUT,
    MERGE_CHILD_TIMEOUT,
    MERGE_TIMEOUT,
    PR_CREATE_TIMEOUT,
    PUSH_TIMEOUT,
    REVIEW_QUERY_TIMEOUT,
)
from attofleet.errors import FleetError
from attofleet.git.service import PRService
from attofleet.git.tests_runner import run_tests
from attofleet.git.worktree import create_worktree, remove_worktree, session_worktree_path
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
    AutoMergePollResult,
    AutoMergeResult,
    AutoPRCommentsFetched,
    AutoPRCreated,
    MergeChildComplete,
    PRCreatedFromTool,
    SessionCompleted,
    TestRunResult,
)
from attofleet.pipeline.machine import PipelineMachine
from attofleet.protocol import (
    CreateChildToolResponse,
    CreatePRToolResponse,
    GetReviewCommentsToolResponse,
    ListChildrenToolResponse,
    MergeChildToolResponse,
    PushBranchToolResponse,
    ToolResponse,
)
from attofleet.sessions.cancellation import CancelHandle
from attofleet.sessions.manager import ActivationResult, SessionManager
from attofleet.sessions.record import SessionRecord
from attofleet.types import CIStatus, MergeType, NotificationLevel, ReviewDecision

log = get_logger(__name__)

TestRunner = Callable[[str, str, str, int], Awaitable[TestRunResult]]
WorktreeRemover = Callable[[str, str, str], bool]
# (repo_path, worktree, branch, start_point)
WorktreeCreator = Callable[[str, str, str, str], None]


class Notifier(Protocol):
    """Surface for transient user-visible notifications."""

    def notify(self, level: NotificationLevel, text: str, session_id: str = "") -> None: ...


class LogNotifier:
    """Notifier that only writes to the log."""

    def notify(self, level: NotificationLevel, text: str, session_id: str = "") -> None:
        emit = {NotificationLevel.WARNING: log.warning, NotificationLevel.ERROR: log.error}.get(level, log.info)
        emit("notification", level=str(level), text=text, session_id=session_id)


class PipelineDispatcher:
    def __init__(
        self,
        manager: SessionManager,
        pr_service: PRService,
        *,
        config: FleetConfig | None = None,
        notifier: Notifier | None = None,
        test_runner: TestRunner = run_tests,
        worktree_remover: WorktreeRemover = remove_worktree,
        worktree_creator: WorktreeCreator = create_worktree,
        registry_path: str | Path | None = None,
    ) -> None:
        self._manager = manager
        self._registry = manager.registry
        self._store = manager.state_store
        self._pr = pr_service
        self._config = config or FleetConfig()
        self._notifier: Notifier = notifier or LogNotifier()
        self._test_runner = test_runner
        self._remove_worktree = worktree_remover
        self._create_worktree = worktree_creator
        self._registry_path = Path(registry_path) if registry_path else None

        self.broadcast = BroadcastCoordinator(self._registry, self._store, manager.get_runner)
        self.machine = PipelineMachine(
            self._registry,
            self._store,
            self._config,
            runner_lookup=manager.get_runner,
            broadcast=self.broadcast,
        )

        self._queues: dict[str, asyncio.Queue[Any]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def submit(self, event: Any) -> None:
        """Queue *event* behind earlier events for the same session."""
        if self._closed:
            log.debug("dispatcher closed, dropping event", event_type=type(event).__name__)
            return
        session_id = getattr(event, "session_id", "")
        queue = self._queues.get(session_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[session_id] = queue
            self._workers[session_id] = asyncio.get_running_loop().create_task(
                self._worker(session_id, queue), name=f"pipeline-{session_id}",
            )
        queue.put_nowait(event)

    async def _worker(self, session_id: str, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            try:
                commands = self.machine.handle(event)
                self._persist()
                for command in commands:
                    await self._execute(command)
            except Exception:
                session_logger(__name__, session_id).exception(
                    "failed to execute pipeline commands", event_type=type(event).__name__,
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queue is drained and no background work remains."""
        while True:
            pending = [t for t in self._background if not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                continue
            for queue in list(self._queues.values()):
                await queue.join()
            if not any(not t.done() for t in self._background) and all(
                q.empty() for q in self._queues.values()
            ):
                return

    async def aclose(self) -> None:
        """Cancel workers and background tasks."""
        self._closed = True
        tasks = [*self._workers.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._background.clear()

    # ------------------------------------------------------------------
    # Agent turns
    # ------------------------------------------------------------------

    def activate(
        self,
        session: SessionRecord | None,
        previous_session_id: str = "",
        previous_input: str = "",
        previous_streaming: str = "",
    ) -> ActivationResult | None:
        """Switch to *session* and send its initial message, if one was set."""
        result = self._manager.select(session, previous_session_id, previous_input, previous_streaming)
        if result is not None and result.initial_message:
            self._send_pending(session.id)
        return result

    def send_message(self, session_id: str, text: str) -> bool:
        """Send *text* now, or queue it as pending when the agent is busy.

        Returns True if a turn was started.
        """
        if self._is_agent_busy(session_id):
            self._store.set_pending_message(session_id, text)
            return False
        return self._start_turn(session_id, text)

    def agent_finished(self, session_id: str) -> None:
        """Hook for hosts that drive the runner themselves."""
        self._after_turn(session_id)

    def _is_agent_busy(self, session_id: str) -> bool:
        if self._store.is_waiting(session_id):
            return True
        runner = self._manager.get_runner(session_id)
        return runner is not None and runner.is_streaming()

    def _send_pending(self, session_id: str) -> None:
        if self._is_agent_busy(session_id):
            session_logger(__name__, session_id).debug("agent busy, pending message stays queued")
            return
        text = self._store.get_pending_message(session_id)
        if text:
            self._start_turn(session_id, text)

    def _start_turn(self, session_id: str, text: str) -> bool:
        sess = self._registry.get(session_id)
        if sess is None:
            return False
        runner = self._manager.get_or_create_runner(sess)
        task = self._spawn(self._run_turn(session_id, runner, text), session_id)
        if not self._store.start_waiting(session_id, CancelHandle.for_task(task)):
            task.cancel()
            self._store.set_pending_message(session_id, text)
            session_logger(__name__, session_id).debug("merge in flight, message queued")
            return False
        return True

    async def _run_turn(self, session_id: str, runner: Any, text: str) -> None:
        slog = session_logger(__name__, session_id)
        try:
            await runner.send(text)
        except asyncio.CancelledError:
            self._store.stop_waiting(session_id)
            raise
        except Exception as exc:
            slog.exception("agent turn failed")
            self._store.stop_waiting(session_id)
            self._notifier.notify(NotificationLevel.ERROR, f"Agent error: {exc}", session_id)
            return
        self._store.stop_waiting(session_id)
        self._registry.mark_started(session_id)
        self._persist()
        self._after_turn(session_id)

    def _after_turn(self, session_id: str) -> None:
        if self._store.peek_pending_message(session_id):
            self._send_pending(session_id)
            return
        sess = self._registry.get(session_id)
        if sess is not None and sess.autonomous:
            self.submit(SessionCompleted(session_id))

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def _execute(self, command: Any) -> None:
        match command:
            case Emit(event=event):
                self.submit(event)
            case RunTests():
                self._spawn(self._run_tests(command), command.session_id)
            case SchedulePoll():
                self._spawn(self._poll(command), command.session_id)
            case FetchReviewComments():
                self._spawn(self._fetch_comments(command), command.session_id)
            case CreatePR():
                self._start_auto_pr(command.session_id)
            case CreatePRForTool():
                self._spawn(self._create_pr_for_tool(command), command.session_id)
            case PushBranchForTool():
                self._spawn(self._push_branch_for_tool(command), command.session_id)
            case FetchReviewCommentsForTool():
                self._spawn(self._review_comments_for_tool(command), command.session_id)
            case CreateChildSession():
                self._spawn(self._create_child(command), command.session_id)
            case MergeChildToParent():
                self._start_merge_child(command)
            case SendToolResponse():
                self._send_tool_response(command.session_id, command.response)
            case MergePR():
                self._spawn(self._merge(command), command.session_id)
            case SendPendingMessage():
                self._send_pending(command.session_id)
            case NotifySupervisor():
                self._notify_supervisor(command)
            case Notify():
                self._notifier.notify(command.level, command.text, command.session_id)
            case AppendTranscript():
                self._store.append_streaming_content(command.session_id, "\n" + command.text + "\n")
            case CleanupSession():
                self._spawn(self._cleanup(command.session_id), command.session_id)
            case _:
                log.warning("unknown pipeline command", command_type=type(command).__name__)

    def _spawn(self, coro: Awaitable[Any], session_id: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                session_logger(__name__, session_id).error(
                    "background pipeline task failed", error=str(t.exception()),
                )

        task.add_done_callback(_done)
        return task

    async def _run_tests(self, command: RunTests) -> None:
        result = await self._test_runner(command.session_id, command.worktree, command.command, command.iteration)
        self.submit(result)

    async def _poll(self, command: SchedulePoll) -> None:
        if command.delay > 0:
            await asyncio.sleep(command.delay)
        sess = self._registry.get(command.session_id)
        if sess is None:
            self._store.clear_auto_merge_polling(command.session_id)
            return
        slog = session_logger(__name__, sess.id)

        review = ReviewDecision.NONE
        comments = 0
        ci = CIStatus.PENDING
        try:
            review = await asyncio.wait_for(
                self._pr.check_review_decision(sess.repo_path, sess.branch), REVIEW_QUERY_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            slog.warning("failed to check PR review decision", error=str(exc))
        try:
            comments = await asyncio.wait_for(
                self._pr.get_comment_count(sess.repo_path, sess.branch), COMMENTS_QUERY_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            slog.warning("failed to check PR comment count", error=str(exc))
        try:
            ci = await asyncio.wait_for(self._pr.check_ci_status(sess.repo_path, sess.branch), CI_QUERY_TIMEOUT)
        except (FleetError, asyncio.TimeoutError) as exc:
            slog.warning("failed to check CI status", error=str(exc))

        slog.debug("poll result", attempt=command.attempt, review=str(review), comments=comments, ci=str(ci))
        self.submit(AutoMergePollResult(sess.id, review, comments, ci, command.attempt))

    async def _fetch_comments(self, command: FetchReviewComments) -> None:
        sess = self._registry.get(command.session_id)
        if sess is None:
            return
        try:
            comments = await asyncio.wait_for(
                self._pr.fetch_review_comments(sess.repo_path, sess.branch), COMMENTS_QUERY_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            self.submit(AutoPRCommentsFetched(sess.id, error=str(exc) or "timed out"))
            return
        if not comments:
            session_logger(__name__, sess.id).debug("no review comments returned")
            return
        self.submit(AutoPRCommentsFetched(
            sess.id, prompt=prompts.format_pr_comments_prompt(comments), comment_count=len(comments),
        ))

    def _start_auto_pr(self, session_id: str) -> None:
        sess = self._registry.get(session_id)
        if sess is None:
            return
        task = self._spawn(self._auto_pr(sess), session_id)
        if not self._store.start_merge(session_id, task, CancelHandle.for_task(task), MergeType.PR):
            task.cancel()
            session_logger(__name__, session_id).debug("session busy, skipping auto-PR")

    async def _auto_pr(self, sess: SessionRecord) -> None:
        try:
            url = await asyncio.wait_for(
                self._pr.create_pr(sess.repo_path, sess.worktree, sess.branch, sess.base_branch, sess.display_name),
                PR_CREATE_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            self._store.stop_merge(sess.id)
            self.submit(AutoPRCreated(sess.id, error=str(exc) or "timed out"))
            return
        self._store.stop_merge(sess.id)
        self.submit(AutoPRCreated(sess.id, pr_url=url))

    async def _create_pr_for_tool(self, command: CreatePRForTool) -> None:
        sess = self._registry.get(command.session_id)
        if sess is None:
            self._send_tool_response(
                command.session_id, CreatePRToolResponse(id=command.request.id, error="Session not found"),
            )
            return
        title = command.request.title or sess.display_name
        try:
            url = await asyncio.wait_for(
                self._pr.create_pr(sess.repo_path, sess.worktree, sess.branch, sess.base_branch, title),
                PR_CREATE_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            self._send_tool_response(
                sess.id, CreatePRToolResponse(id=command.request.id, error=str(exc) or "timed out"),
            )
            return
        self._send_tool_response(sess.id, CreatePRToolResponse(id=command.request.id, success=True, pr_url=url))
        self.submit(PRCreatedFromTool(sess.id, pr_url=url))

    async def _push_branch_for_tool(self, command: PushBranchForTool) -> None:
        sess = self._registry.get(command.session_id)
        if sess is None:
            self._send_tool_response(
                command.session_id, PushBranchToolResponse(id=command.request.id, error="Session not found"),
            )
            return
        try:
            await asyncio.wait_for(
                self._pr.push_branch(sess.repo_path, sess.worktree, sess.branch, command.request.commit_message),
                PUSH_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            self._send_tool_response(
                sess.id, PushBranchToolResponse(id=command.request.id, error=str(exc) or "timed out"),
            )
            return
        self._send_tool_response(sess.id, PushBranchToolResponse(id=command.request.id, success=True))

    async def _review_comments_for_tool(self, command: FetchReviewCommentsForTool) -> None:
        request_id = command.request.id
        sess = self._registry.get(command.session_id)
        if sess is None:
            self._send_tool_response(
                command.session_id, GetReviewCommentsToolResponse(id=request_id, error="Session not found"),
            )
            return
        try:
            comments = await asyncio.wait_for(
                self._pr.fetch_review_comments(sess.repo_path, sess.branch), COMMENTS_QUERY_TIMEOUT,
            )
        except (FleetError, asyncio.TimeoutError) as exc:
            self._send_tool_response(sess.id, GetReviewCommentsToolResponse(
                id=request_id, error=f"Failed to fetch review comments: {str(exc) or 'timed out'}",
            ))
            return
        self._send_tool_response(
            sess.id, GetReviewCommentsToolResponse(id=request_id, success=True, comments=comments),
        )

    # ------------------------------------------------------------------
    # Supervisor tools
    # ------------------------------------------------------------------

    async def _create_child(self, command: CreateChildSession) -> None:
        """Check out a branch off the supervisor's, register the child and start it on its task."""
        request = command.request
        supervisor = self._registry.get(command.session_id)
        if supervisor is None or not supervisor.is_supervisor:
            self._send_tool_response(
                command.session_id, CreateChildToolResponse(id=request.id, error="Session is not a supervisor"),
            )
            return
        slog = session_logger(__name__, supervisor.id)

        child_id = str(uuid.uuid4())
        short_id = child_id[:8]
        branch = f"{BRANCH_PREFIX}child-{short_id}"
        worktree = session_worktree_path(supervisor.repo_path, child_id)
        try:
            await asyncio.to_thread(
                self._create_worktree, supervisor.repo_path, worktree, branch, supervisor.branch or "HEAD",
            )
        except (FleetError, OSError) as exc:
            slog.error("failed to create child session", error=str(exc))
            self._send_tool_response(supervisor.id, CreateChildToolResponse(
                id=request.id, error=f"Failed to create child session: {exc}",
            ))
            return

        self._registry.add(SessionRecord(
            id=child_id,
            repo_path=supervisor.repo_path,
            worktree=worktree,
            branch=branch,
            base_branch=supervisor.branch,
            name=f"child-{short_id}",
            autonomous=True,
            supervisor_id=supervisor.id,
            parent_id=supervisor.id,
        ))
        self._persist()
        slog.info("created child session", child_id=child_id, branch=branch)

        self._send_tool_response(supervisor.id, CreateChildToolResponse(
            id=request.id, success=True, child_id=child_id, branch=branch,
        ))
        if not self._start_turn(child_id, prompts.format_child_task_prompt(request.task)):
            session_logger(__name__, child_id).warning("child task queued, session busy")

    def _start_merge_child(self, command: MergeChildToParent) -> None:
        supervisor = self._registry.get(command.session_id)
        child = self._registry.get(command.child_id)
        if supervisor is None or child is None:
            self.submit(MergeChildComplete(
                command.session_id, command.child_id, command.request_id, error="Child session not found",
            ))
            return
        task = self._spawn(self._merge_child(supervisor, child, command.request_id), child.id)
        if not self._store.start_merge(child.id, task, CancelHandle.for_task(task), MergeType.PARENT):
            task.cancel()
            self.submit(MergeChildComplete(
                supervisor.id, child.id, command.request_id, error="Child session is busy",
            ))

    async def _merge_child(self, supervisor: SessionRecord, child: SessionRecord, request_id: str) -> None:
        try:
            message = await asyncio.wait_for(
                self._pr.merge_to_parent(child.worktree, child.branch, supervisor.worktree, supervisor.branch),
                MERGE_CHILD_TIMEOUT,
            )
        except asyncio.CancelledError:
            self._store.stop_merge(child.id)
            self.submit(MergeChildComplete(supervisor.id, child.id, request_id, error="Merge cancelled"))
            raise
        except (FleetError, asyncio.TimeoutError) as exc:
            self._store.stop_merge(child.id)
            self.submit(MergeChildComplete(supervisor.id, child.id, request_id, error=str(exc) or "timed out"))
            return
        self._store.stop_merge(child.id)
        self.submit(MergeChildComplete(supervisor.id, child.id, request_id, message=message))

    def _send_tool_response(self, session_id: str, response: ToolResponse) -> None:
        runner = self._manager.get_runner(session_id)
        if runner is None:
            session_logger(__name__, session_id).debug("runner gone, dropping tool response")
            return
        match response:
            case CreatePRToolResponse():
                runner.send_create_pr_response(response)
            case PushBranchToolResponse():
                runner.send_push_branch_response(response)
            case GetReviewCommentsToolResponse():
                runner.send_review_comments_response(response)
            case CreateChildToolResponse():
                runner.send_create_child_response(response)
            case ListChildrenToolResponse():
                runner.send_list_children_response(response)
            case MergeChildToolResponse():
                runner.send_merge_child_response(response)

    async def _merge(self, command: MergePR) -> None:
        sess = self._registry.get(command.session_id)
        if sess is None:
            self._store.clear_auto_merge_polling(command.session_id)
            return
        try:
            await asyncio.wait_for(self._pr.merge_pr(sess.repo_path, sess.branch, command.method), MERGE_TIMEOUT)
        except (FleetError, asyncio.TimeoutError) as exc:
            self.submit(AutoMergeResult(sess.id, error=str(exc) or "timed out"))
            return
        self.submit(AutoMergeResult(sess.id))

    def _notify_supervisor(self, command: NotifySupervisor) -> None:
        if self._registry.get(command.supervisor_id) is None:
            session_logger(__name__, command.child_id).debug(
                "supervisor session gone", supervisor_id=command.supervisor_id,
            )
            return
        self._store.set_pending_message(command.supervisor_id, command.prompt)
        self._send_pending(command.supervisor_id)

    async def _cleanup(self, session_id: str) -> None:
        sess = self._registry.get(session_id)
        if sess is None:
            return
        slog = session_logger(__name__, session_id)
        removed = await asyncio.to_thread(self._remove_worktree, sess.repo_path, sess.worktree, sess.branch)
        if not removed:
            slog.warning("auto-cleanup: failed to delete worktree", worktree=sess.worktree)

        self._manager.delete_session(session_id)
        self._registry.remove(session_id)
        self._registry.clear_orphaned_parent_ids([session_id])
        self._persist()
        worker = self._workers.pop(session_id, None)
        self._queues.pop(session_id, None)
        if worker is not None:
            worker.cancel()
        slog.info("auto-cleaned session", reason="merged")
        self._notifier.notify(NotificationLevel.INFO, f"Auto-cleaned: {sess.display_name} (PR merged)", session_id)

    def _persist(self) -> None:
        if self._registry_path is None:
            return
        try:
            self._registry.save(self._registry_path)
        except OSError as exc:
            log.error("failed to save session registry", path=str(self._registry_path), error=str(exc))
