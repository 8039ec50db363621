"""Completion pipeline: events, the state machine and its asyncio executor.

The dispatcher lives in :mod:`attofleet.pipeline.dispatcher`; it is not
re-exported here because it depends on :mod:`attofleet.git`, which in turn
reports test results as pipeline events.
"""

from attofleet.pipeline.broadcast import BroadcastCoordinator
from attofleet.pipeline.guard import PollGuard
from attofleet.pipeline.machine import PipelineMachine

__all__ = ["BroadcastCoordinator", "PipelineMachine", "PollGuard"]
