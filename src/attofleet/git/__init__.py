"""Git and pull-request collaborators for the completion pipeline."""

from attofleet.git.gh import GhCliService
from attofleet.git.service import PRService
from attofleet.git.tests_runner import run_tests
from attofleet.git.worktree import create_worktree, remove_worktree

__all__ = ["GhCliService", "PRService", "create_worktree", "remove_worktree", "run_tests"]
