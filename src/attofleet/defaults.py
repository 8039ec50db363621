"""System defaults shared by the config layer and the pipeline."""

from __future__ import annotations

# =============================================================================
# PIPELINE BUDGETS
# =============================================================================

# ~30 minutes at the default poll interval
MAX_AUTO_MERGE_POLL_ATTEMPTS = 60
AUTO_MERGE_POLL_INTERVAL_SECONDS = 30.0

DEFAULT_TEST_MAX_RETRIES = 3

# =============================================================================
# AUTONOMY LIMITS
# =============================================================================

AUTO_MAX_TURNS = 50
AUTO_MAX_DURATION_MIN = 30

# =============================================================================
# COLLABORATOR TIMEOUTS (seconds)
# =============================================================================

REVIEW_QUERY_TIMEOUT = 15.0
CI_QUERY_TIMEOUT = 30.0
COMMENTS_QUERY_TIMEOUT = 30.0
MERGE_TIMEOUT = 60.0
PR_CREATE_TIMEOUT = 120.0
PUSH_TIMEOUT = 120.0
MERGE_CHILD_TIMEOUT = 120.0

# =============================================================================
# PATHS
# =============================================================================

PROJECT_DIR = ".attofleet"
DEFAULT_CONFIG_FILE = "fleet.yaml"
DEFAULT_REGISTRY_FILE = "sessions.json"

# Where the agent CLI keeps per-project conversation files
DEFAULT_CONVERSATION_DIR = "~/.claude/projects"

MERGE_METHODS = ("squash", "merge", "rebase")

# Session worktrees are created in this directory beside the repository
WORKTREES_DIR = ".attofleet-worktrees"

# Branches generated for new sessions carry this prefix
BRANCH_PREFIX = "attofleet-"
