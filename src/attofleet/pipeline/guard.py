"""At most one auto-merge poll loop per session."""

from __future__ import annotations

from attofleet.logger import session_logger
from attofleet.sessions.state import SessionStateStore


class PollGuard:
    """Test-and-set over the session's ``auto_merge_polling`` flag."""

    def __init__(self, store: SessionStateStore) -> None:
        self._store = store

    def start_polling(self, session_id: str) -> bool:
        """Claim the poll loop. ``False`` means one is already running."""
        started = self._store.try_start_auto_merge_polling(session_id)
        if not started:
            session_logger(__name__, session_id).debug("auto-merge polling already active")
        return started

    def clear_polling(self, session_id: str) -> None:
        self._store.clear_auto_merge_polling(session_id)

    def is_polling(self, session_id: str) -> bool:
        return self._store.get_auto_merge_polling(session_id)
