"""Per-session transient state and the thread-safe store that owns it.

Everything here lives only in memory: pending agent requests, in-flight
merge/stream handles, UI hand-off text and pipeline bookkeeping. State is
created lazily on first reference and destroyed when the session is deleted.

All access goes through :class:`SessionStateStore`. Compound transitions
(``start_waiting``, ``start_merge``, the consuming getters, marker
replacement) touch several fields inside one critical section, so no reader
ever observes a half-updated state.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

from attofleet.protocol import PermissionRequest, PlanApprovalRequest, QuestionRequest
from attofleet.sessions.cancellation import CancelHandle, cancel_quietly
from attofleet.types import DetectedOption, MergeType, TodoList

UNSET_POS = -1


@dataclass(slots=True)
class SessionState:
    """Mutable runtime state for one session."""

    # Requests the agent is blocked on
    pending_permission: PermissionRequest | None = None
    pending_question: QuestionRequest | None = None
    pending_plan_approval: PlanApprovalRequest | None = None

    # Merge/PR operation in flight
    merge_channel: asyncio.Future[Any] | None = None
    merge_cancel: CancelHandle | None = None
    merge_type: MergeType = MergeType.NONE

    # Agent response streaming
    stream_cancel: CancelHandle | None = None
    wait_start: float = 0.0
    is_waiting: bool = False

    # UI state preserved across session switches
    input_text: str = ""
    streaming_content: str = ""
    tool_use_pos: int = UNSET_POS  # byte offset into streaming_content

    # Pipeline bookkeeping
    pending_message: str = ""
    initial_message: str = ""
    auto_merge_polling: bool = False
    test_iteration: int = 0
    detected_options: list[DetectedOption] = field(default_factory=list)
    current_todo_list: TodoList | None = None

    def has_detected_options(self) -> bool:
        return len(self.detected_options) >= 2

    def has_todo_list(self) -> bool:
        return self.current_todo_list is not None and len(self.current_todo_list.items) > 0

    def is_merging(self) -> bool:
        return self.merge_channel is not None


@dataclass(slots=True)
class RestoredState:
    """What a session hands back to the presentation layer on activation."""

    permission: PermissionRequest | None = None
    question: QuestionRequest | None = None
    plan_approval: PlanApprovalRequest | None = None
    todo_list: TodoList | None = None
    is_waiting: bool = False
    wait_start: float = 0.0
    streaming: str = ""
    saved_input: str = ""


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SessionStateStore:
    """Concurrency-safe map from session ID to :class:`SessionState`.

    One reader/writer lock guards the whole map. Critical sections are field
    assignments only, never I/O.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._states: dict[str, SessionState] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_or_create(self, session_id: str) -> SessionState:
        with self._lock.write():
            return self._get_or_create(session_id)

    def get_if_exists(self, session_id: str) -> SessionState | None:
        """Snapshot of the session's state, or None. Changes to it are not stored."""
        with self._lock.read():
            state = self._states.get(session_id)
            if state is None:
                return None
            return replace(state, detected_options=list(state.detected_options))

    def session_ids(self) -> list[str]:
        with self._lock.read():
            return list(self._states)

    def delete(self, session_id: str) -> None:
        """Cancel in-flight work, drop references and remove the entry."""
        with self._lock.write():
            state = self._states.pop(session_id, None)
            if state is None:
                return
            merge_cancel, stream_cancel = state.merge_cancel, state.stream_cancel
            state.merge_cancel = None
            state.stream_cancel = None
            state.merge_channel = None
            state.merge_type = MergeType.NONE
            state.is_waiting = False

            # Large strings (streaming output especially) go first
            state.input_text = ""
            state.streaming_content = ""
            state.pending_message = ""
            state.initial_message = ""

            state.pending_permission = None
            state.pending_question = None
            state.pending_plan_approval = None
            state.detected_options = []
            state.current_todo_list = None
            state.auto_merge_polling = False

        # Callbacks run outside the lock; they may call back into the store.
        cancel_quietly(merge_cancel, "session deleted")
        cancel_quietly(stream_cancel, "session deleted")

    # ------------------------------------------------------------------
    # Waiting for the agent
    # ------------------------------------------------------------------

    def start_waiting(self, session_id: str, cancel: CancelHandle | None) -> bool:
        """Mark the session as awaiting agent output.

        Refused (returns False) while a merge is in flight.
        """
        with self._lock.write():
            state = self._get_or_create(session_id)
            if state.is_merging():
                return False
            state.wait_start = time.time()
            state.is_waiting = True
            state.stream_cancel = cancel
            return True

    def stop_waiting(self, session_id: str) -> None:
        with self._lock.write():
            state = self._states.get(session_id)
            if state is not None:
                state.is_waiting = False
                state.wait_start = 0.0
                state.stream_cancel = None

    def get_wait_start(self, session_id: str) -> tuple[float, bool]:
        with self._lock.read():
            state = self._states.get(session_id)
            if state is not None and state.is_waiting:
                return state.wait_start, True
            return 0.0, False

    def is_waiting(self, session_id: str) -> bool:
        with self._lock.read():
            state = self._states.get(session_id)
            return state is not None and state.is_waiting

    # ------------------------------------------------------------------
    # Merge / PR operations
    # ------------------------------------------------------------------

    def start_merge(
        self,
        session_id: str,
        channel: asyncio.Future[Any],
        cancel: CancelHandle | None,
        merge_type: MergeType,
    ) -> bool:
        """Record an in-flight merge. Refused while waiting or already merging."""
        with self._lock.write():
            state = self._get_or_create(session_id)
            if state.is_waiting or state.is_merging():
                return False
            state.merge_channel = channel
            state.merge_cancel = cancel
            state.merge_type = merge_type
            return True

    def stop_merge(self, session_id: str) -> None:
        with self._lock.write():
            state = self._states.get(session_id)
            if state is not None:
                state.merge_channel = None
                state.merge_cancel = None
                state.merge_type = MergeType.NONE

    def is_merging(self, session_id: str) -> bool:
        with self._lock.read():
            state = self._states.get(session_id)
            return state is not None and state.is_merging()

    def merge_type(self, session_id: str) -> MergeType:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.merge_type if state is not None else MergeType.NONE

    # ------------------------------------------------------------------
    # Streaming content and tool-use markers
    # ------------------------------------------------------------------

    def append_streaming_content(self, session_id: str, text: str) -> None:
        with self._lock.write():
            state = self._get_or_create(session_id)
            state.streaming_content += text

    def set_streaming_content(self, session_id: str, text: str) -> None:
        with self._lock.write():
            self._get_or_create(session_id).streaming_content = text

    def get_streaming_content(self, session_id: str) -> str:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.streaming_content if state is not None else ""

    def append_tool_use_marker(self, session_id: str, marker: str) -> int:
        """Append *marker* and remember its byte offset for later replacement."""
        with self._lock.write():
            state = self._get_or_create(session_id)
            pos = len(state.streaming_content.encode("utf-8"))
            state.streaming_content += marker
            state.tool_use_pos = pos
            return pos

    def set_tool_use_pos(self, session_id: str, pos: int) -> None:
        with self._lock.write():
            self._get_or_create(session_id).tool_use_pos = pos

    def get_tool_use_pos(self, session_id: str) -> int:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.tool_use_pos if state is not None else UNSET_POS

    def replace_tool_use_marker(self, session_id: str, old_marker: str, new_marker: str, pos: int) -> None:
        """Swap *old_marker* for *new_marker* at byte offset *pos*.

        Silent no-op unless the bytes at ``[pos, pos + len(old_marker))`` are
        exactly *old_marker*; concurrent appends may have moved the content.
        """
        with self._lock.write():
            state = self._states.get(session_id)
            if state is None:
                return
            content = state.streaming_content.encode("utf-8")
            old = old_marker.encode("utf-8")
            if pos < 0 or pos + len(old) > len(content):
                return
            if content[pos:pos + len(old)] != old:
                return
            rebuilt = content[:pos] + new_marker.encode("utf-8") + content[pos + len(old):]
            try:
                state.streaming_content = rebuilt.decode("utf-8")
            except UnicodeDecodeError:
                # pos fell inside a multibyte character
                return

    # ------------------------------------------------------------------
    # Queued messages
    # ------------------------------------------------------------------

    def set_pending_message(self, session_id: str, message: str) -> None:
        with self._lock.write():
            self._get_or_create(session_id).pending_message = message

    def get_pending_message(self, session_id: str) -> str:
        """Consuming read: returns the pending message and clears it."""
        with self._lock.write():
            state = self._states.get(session_id)
            if state is None:
                return ""
            msg, state.pending_message = state.pending_message, ""
            return msg

    def peek_pending_message(self, session_id: str) -> str:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.pending_message if state is not None else ""

    def set_initial_message(self, session_id: str, message: str) -> None:
        with self._lock.write():
            self._get_or_create(session_id).initial_message = message

    def get_initial_message(self, session_id: str) -> str:
        """Consuming read: returns the initial message and clears it."""
        with self._lock.write():
            state = self._states.get(session_id)
            if state is None:
                return ""
            msg, state.initial_message = state.initial_message, ""
            return msg

    def peek_initial_message(self, session_id: str) -> str:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.initial_message if state is not None else ""

    # ------------------------------------------------------------------
    # Pipeline flags
    # ------------------------------------------------------------------

    def get_auto_merge_polling(self, session_id: str) -> bool:
        with self._lock.read():
            state = self._states.get(session_id)
            return state is not None and state.auto_merge_polling

    def set_auto_merge_polling(self, session_id: str, polling: bool) -> None:
        with self._lock.write():
            self._get_or_create(session_id).auto_merge_polling = polling

    def try_start_auto_merge_polling(self, session_id: str) -> bool:
        """Atomic test-and-set of the polling flag. True if it was clear."""
        with self._lock.write():
            state = self._get_or_create(session_id)
            if state.auto_merge_polling:
                return False
            state.auto_merge_polling = True
            return True

    def clear_auto_merge_polling(self, session_id: str) -> None:
        with self._lock.write():
            state = self._states.get(session_id)
            if state is not None:
                state.auto_merge_polling = False

    def get_test_iteration(self, session_id: str) -> int:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.test_iteration if state is not None else 0

    def set_test_iteration(self, session_id: str, iteration: int) -> None:
        with self._lock.write():
            self._get_or_create(session_id).test_iteration = iteration

    # ------------------------------------------------------------------
    # UI hand-off
    # ------------------------------------------------------------------

    def set_input_text(self, session_id: str, text: str) -> None:
        with self._lock.write():
            self._get_or_create(session_id).input_text = text

    def get_input_text(self, session_id: str) -> str:
        with self._lock.read():
            state = self._states.get(session_id)
            return state.input_text if state is not None else ""

    def set_pending_permission(self, session_id: str, request: PermissionRequest | None) -> None:
        with self._lock.write():
            self._get_or_create(session_id).pending_permission = request

    def set_pending_question(self, session_id: str, request: QuestionRequest | None) -> None:
        with self._lock.write():
            self._get_or_create(session_id).pending_question = request

    def set_pending_plan_approval(self, session_id: str, request: PlanApprovalRequest | None) -> None:
        with self._lock.write():
            self._get_or_create(session_id).pending_plan_approval = request

    def set_detected_options(self, session_id: str, options: list[DetectedOption]) -> None:
        with self._lock.write():
            self._get_or_create(session_id).detected_options = list(options)

    def has_detected_options(self, session_id: str) -> bool:
        with self._lock.read():
            state = self._states.get(session_id)
            return state is not None and state.has_detected_options()

    def set_todo_list(self, session_id: str, todo_list: TodoList | None) -> None:
        with self._lock.write():
            self._get_or_create(session_id).current_todo_list = todo_list

    def has_todo_list(self, session_id: str) -> bool:
        with self._lock.read():
            state = self._states.get(session_id)
            return state is not None and state.has_todo_list()

    def take_restored_state(self, session_id: str) -> RestoredState | None:
        """Read everything activation restores; streaming content is handed over.

        Returns None when the session has no state yet.
        """
        with self._lock.write():
            state = self._states.get(session_id)
            if state is None:
                return None
            restored = RestoredState(
                permission=state.pending_permission,
                question=state.pending_question,
                plan_approval=state.pending_plan_approval,
                todo_list=state.current_todo_list,
                is_waiting=state.is_waiting,
                wait_start=state.wait_start if state.is_waiting else 0.0,
                streaming=state.streaming_content,
                saved_input=state.input_text,
            )
            state.streaming_content = ""
            state.tool_use_pos = UNSET_POS
            return restored

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get_or_create(self, session_id: str) -> SessionState:
        """Caller must hold the write lock."""
        state = self._states.get(session_id)
        if state is None:
            state = SessionState()
            self._states[session_id] = state
        return state
