"""Readiness checks for broadcast groups.

A broadcast group is a set of sessions, often spread across repositories,
that were started from one shared prompt. Group-wide actions (send to all,
open PRs for all) only run once no member has work in flight.
"""

from __future__ import annotations

from collections.abc import Callable

from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.runner import AgentRunner
from attofleet.sessions.state import SessionStateStore

RunnerLookup = Callable[[str], AgentRunner | None]


class BroadcastCoordinator:
    def __init__(
        self,
        registry: SessionRegistry,
        store: SessionStateStore,
        runner_lookup: RunnerLookup | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._runner_lookup = runner_lookup

    def members(self, group_id: str) -> list[SessionRecord]:
        return self._registry.by_broadcast_group(group_id)

    def all_complete(self, group_id: str) -> bool:
        """True when no member is waiting on the agent or merging.

        An empty group is complete. Never mutates state.
        """
        for member in self.members(group_id):
            if self.is_busy(member.id):
                return False
        return True

    def members_needing_pr(self, group_id: str) -> list[SessionRecord]:
        return [m for m in self.members(group_id) if not m.pr_created and not m.pr_merged]

    def is_busy(self, session_id: str) -> bool:
        """Waiting on the agent, merging, or (when known) streaming."""
        if self._store.is_waiting(session_id) or self._store.is_merging(session_id):
            return True
        if self._runner_lookup is not None:
            runner = self._runner_lookup(session_id)
            if runner is not None and runner.is_streaming():
                return True
        return False
