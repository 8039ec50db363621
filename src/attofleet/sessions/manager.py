"""Session activation, runner lifecycle and conversation forking.

``SessionManager`` owns the runner cache and the :class:`SessionStateStore`.
When the active session changes it saves the outgoing session's UI text,
obtains (or lazily creates) the incoming session's runner and hands back
everything the presentation layer needs to restore it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from attofleet.config.schema import FleetConfig
from attofleet.defaults import BRANCH_PREFIX
from attofleet.logger import get_logger, session_logger
from attofleet.protocol import PermissionRequest, PlanApprovalRequest, QuestionRequest
from attofleet.sessions.fork import copy_session_for_fork
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.runner import AgentRunner, MessageLoader, RunnerFactory
from attofleet.sessions.state import ReadWriteLock, SessionStateStore
from attofleet.types import Message, TodoList

log = get_logger(__name__)


@dataclass(slots=True)
class ActivationResult:
    """State the caller applies to its presentation layer after a switch."""

    runner: AgentRunner
    messages: list[Message] = field(default_factory=list)
    header_name: str = ""
    base_branch: str = ""
    forked_from: str = ""

    permission: PermissionRequest | None = None
    question: QuestionRequest | None = None
    plan_approval: PlanApprovalRequest | None = None
    todo_list: TodoList | None = None
    is_waiting: bool = False
    wait_start: float = 0.0
    streaming: str = ""
    saved_input: str = ""
    initial_message: str = ""  # moved to the pending message for delivery


class SessionManager:
    """Runner cache plus per-session state, keyed by session ID."""

    def __init__(
        self,
        registry: SessionRegistry,
        runner_factory: RunnerFactory,
        *,
        config: FleetConfig | None = None,
        state_store: SessionStateStore | None = None,
        message_loader: MessageLoader | None = None,
    ) -> None:
        self._registry = registry
        self._runner_factory = runner_factory
        self._config = config or FleetConfig()
        self._store = state_store or SessionStateStore()
        self._message_loader = message_loader
        self._runners: dict[str, AgentRunner] = {}
        self._forks: dict[str, str] = {}
        self._lock = ReadWriteLock()

    @property
    def state_store(self) -> SessionStateStore:
        return self._store

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def select(
        self,
        session: SessionRecord | None,
        previous_session_id: str = "",
        previous_input: str = "",
        previous_streaming: str = "",
    ) -> ActivationResult | None:
        """Activate *session*, saving the outgoing session's UI text first."""
        if session is None:
            return None

        if previous_session_id:
            self._store.set_input_text(previous_session_id, previous_input)
            self._store.set_streaming_content(previous_session_id, previous_streaming)
            session_logger(__name__, previous_session_id).debug(
                "saved ui state", input_len=len(previous_input), streaming_len=len(previous_streaming),
            )

        slog = session_logger(__name__, session.id)
        slog.debug("selecting session", name=session.name)

        runner = self.get_or_create_runner(session)
        result = ActivationResult(
            runner=runner,
            messages=runner.get_messages(),
            header_name=_header_name(session),
            base_branch=session.base_branch,
            forked_from=self._forks.get(session.id, ""),
        )

        restored = self._store.take_restored_state(session.id)
        if restored is not None:
            result.permission = restored.permission
            result.question = restored.question
            result.plan_approval = restored.plan_approval
            result.todo_list = restored.todo_list
            result.is_waiting = restored.is_waiting
            result.wait_start = restored.wait_start
            result.streaming = restored.streaming
            result.saved_input = restored.saved_input

        initial = self._store.get_initial_message(session.id)
        if initial:
            self._store.set_pending_message(session.id, initial)
            result.initial_message = initial

        slog.debug("session selected", waiting=result.is_waiting)
        return result

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    def get_runner(self, session_id: str) -> AgentRunner | None:
        with self._lock.read():
            return self._runners.get(session_id)

    def runners(self) -> dict[str, AgentRunner]:
        """Snapshot of the runner map, safe to iterate."""
        with self._lock.read():
            return dict(self._runners)

    def set_runner(self, session_id: str, runner: AgentRunner) -> None:
        with self._lock.write():
            self._runners[session_id] = runner

    def has_active_streaming(self) -> bool:
        return any(r.is_streaming() for r in self.runners().values())

    def get_or_create_runner(self, session: SessionRecord) -> AgentRunner:
        """Return the cached runner or build one; at most one per session."""
        slog = session_logger(__name__, session.id)

        with self._lock.read():
            runner = self._runners.get(session.id)
        if runner is not None:
            slog.debug("reusing existing runner")
            return runner

        with self._lock.write():
            # Another thread may have created it while we waited.
            runner = self._runners.get(session.id)
            if runner is not None:
                slog.debug("reusing existing runner (created concurrently)")
                return runner
            runner = self._runner_factory(
                session.id, session.worktree, session.started, self._load_messages(session.id),
            )
            self._runners[session.id] = runner
        slog.debug("created runner")

        self._configure_fork(session, runner)

        allowed = self._config.allowed_tools(session.repo_path)
        if allowed:
            runner.set_allowed_tools(allowed)
            slog.debug("applied allowed tools", count=len(allowed), repo=session.repo_path)
        return runner

    def _configure_fork(self, session: SessionRecord, runner: AgentRunner) -> None:
        """Branch a never-started child from its started parent's conversation."""
        if session.started or not session.parent_id:
            return
        slog = session_logger(__name__, session.id)
        parent = self._registry.get(session.parent_id)
        if parent is None:
            slog.debug("parent session not found, starting fresh", parent_id=session.parent_id)
            return
        if not parent.started:
            slog.debug("parent session never started, starting fresh", parent_id=session.parent_id)
            return
        try:
            copy_session_for_fork(
                parent.id, parent.worktree, session.worktree, Path(self._config.conversation_dir),
            )
        except OSError as exc:
            slog.warning("could not copy parent conversation, starting fresh", error=str(exc))
            return
        runner.set_fork_from_session(parent.id)
        self._forks[session.id] = parent.id
        slog.debug("session will fork from parent", parent_id=parent.id)

    def _load_messages(self, session_id: str) -> list[Message]:
        if self._message_loader is None:
            return []
        try:
            return list(self._message_loader(session_id))
        except OSError as exc:
            session_logger(__name__, session_id).warning("failed to load saved messages", error=str(exc))
            return []

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete_session(self, session_id: str) -> AgentRunner | None:
        """Stop and drop the runner, then delete all per-session state.

        Returns the runner that was cached, if any.
        """
        with self._lock.write():
            runner = self._runners.pop(session_id, None)
            self._forks.pop(session_id, None)
        if runner is not None:
            session_logger(__name__, session_id).debug("stopping runner for deleted session")
            runner.stop()
        self._store.delete(session_id)
        return runner

    def shutdown(self) -> None:
        """Stop every runner. Called when the host is exiting."""
        with self._lock.write():
            runners, self._runners = self._runners, {}
            self._forks.clear()
        log.info("shutting down runners", count=len(runners))
        for session_id, runner in runners.items():
            session_logger(__name__, session_id).debug("stopping runner")
            runner.stop()


def _header_name(session: SessionRecord) -> str:
    """Custom branch names win over the session name; generated ones do not."""
    if session.branch and not session.branch.startswith(BRANCH_PREFIX):
        return session.branch
    return session.name or session.branch
