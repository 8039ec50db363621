"""Session records, transient state, runners and activation."""

from attofleet.sessions.cancellation import CancelHandle
from attofleet.sessions.manager import ActivationResult, SessionManager
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.runner import AgentRunner, RunnerFactory
from attofleet.sessions.state import SessionState, SessionStateStore

__all__ = [
    "ActivationResult",
    "AgentRunner",
    "CancelHandle",
    "RunnerFactory",
    "SessionManager",
    "SessionRecord",
    "SessionRegistry",
    "SessionState",
    "SessionStateStore",
]
