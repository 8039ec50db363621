"""``PRService`` backed by the ``git`` and ``gh`` command-line tools."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from tenacity import RetryCallState

from attofleet.defaults import (
    CI_QUERY_TIMEOUT,
    COMMENTS_QUERY_TIMEOUT,
    MERGE_CHILD_TIMEOUT,
    MERGE_METHODS,
    MERGE_TIMEOUT,
    PR_CREATE_TIMEOUT,
    PUSH_TIMEOUT,
    REVIEW_QUERY_TIMEOUT,
)
from attofleet.errors import GitCommandError
from attofleet.logger import get_logger
from attofleet.protocol import ReviewComment
from attofleet.retry import retry_async
from attofleet.types import CIStatus, ReviewDecision

log = get_logger(__name__)

DEFAULT_COMMIT_MESSAGE = "Apply agent changes"

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "could not resolve host",
    "temporary failure",
    "502",
    "503",
    "504",
)

_REVIEW_DECISIONS = {
    "APPROVED": ReviewDecision.APPROVED,
    "CHANGES_REQUESTED": ReviewDecision.CHANGES_REQUESTED,
    "REVIEW_REQUIRED": ReviewDecision.REQUIRED,
}

_FAILED_CONCLUSIONS = {"FAILURE", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "STARTUP_FAILURE", "ERROR"}
_PENDING_STATES = {"PENDING", "EXPECTED", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED"}


def parse_review_decision(raw: str) -> ReviewDecision:
    return _REVIEW_DECISIONS.get(raw.strip().upper(), ReviewDecision.NONE)


def parse_ci_rollup(checks: list[dict[str, Any]]) -> CIStatus:
    """Collapse ``statusCheckRollup`` entries into one status.

    Any failure wins, then anything still running; no checks at all is
    :attr:`CIStatus.NONE`.
    """
    if not checks:
        return CIStatus.NONE
    pending = False
    for check in checks:
        # CheckRun entries carry status/conclusion, StatusContext entries carry state
        conclusion = str(check.get("conclusion") or "").upper()
        state = str(check.get("state") or "").upper()
        status = str(check.get("status") or "").upper()
        if conclusion in _FAILED_CONCLUSIONS or state in {"FAILURE", "ERROR"}:
            return CIStatus.FAILING
        if state in _PENDING_STATES or status in _PENDING_STATES or (status and status != "COMPLETED"):
            pending = True
    return CIStatus.PENDING if pending else CIStatus.PASSING


def count_comments(view: dict[str, Any]) -> int:
    """Conversation comments plus reviews that carry a body."""
    comments = view.get("comments") or []
    reviews = [r for r in view.get("reviews") or [] if str(r.get("body") or "").strip()]
    return len(comments) + len(reviews)


def parse_comments(view: dict[str, Any], inline: list[dict[str, Any]] | None = None) -> list[ReviewComment]:
    out: list[ReviewComment] = []
    for item in view.get("comments") or []:
        out.append(ReviewComment(
            author=_login(item.get("author")),
            body=str(item.get("body") or ""),
            url=str(item.get("url") or ""),
        ))
    for review in view.get("reviews") or []:
        body = str(review.get("body") or "")
        if body.strip():
            out.append(ReviewComment(author=_login(review.get("author")), body=body))
    for item in inline or []:
        line = item.get("line") or item.get("original_line") or 0
        out.append(ReviewComment(
            author=_login(item.get("user")),
            body=str(item.get("body") or ""),
            path=str(item.get("path") or ""),
            line=int(line),
            url=str(item.get("html_url") or ""),
        ))
    return out


def _login(author: Any) -> str:
    if isinstance(author, dict):
        return str(author.get("login") or "")
    return ""


def _is_transient(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning("retrying gh query", attempt=state.attempt_number, error=str(exc))


async def run_command(args: list[str], cwd: str, timeout: float) -> str:
    """Run *args* in *cwd* and return stdout; non-zero exit raises."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise GitCommandError(f"Could not run {args[0]}: {exc}", command=args) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.communicate()
        raise GitCommandError(
            f"{' '.join(args[:3])} timed out after {timeout}s", command=args, retryable=True,
        ) from exc

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace").strip()
    if proc.returncode != 0:
        raise GitCommandError(
            err or f"{args[0]} exited with {proc.returncode}",
            command=args,
            returncode=proc.returncode,
            stderr=err,
            retryable=_is_transient(err),
        )
    return out


class GhCliService:
    """Pull requests through ``gh``, commits and pushes through ``git``."""

    def __init__(
        self,
        *,
        gh: str = "gh",
        git: str = "git",
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 10.0,
    ) -> None:
        self._gh = gh
        self._git = git
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait

    # ------------------------------------------------------------------
    # Read-only queries (retried)
    # ------------------------------------------------------------------

    async def _query(self, repo_path: str, args: list[str], timeout: float) -> str:
        return await retry_async(
            run_command,
            [self._gh, *args],
            repo_path,
            timeout,
            max_attempts=self._max_attempts,
            min_wait=self._min_wait,
            max_wait=self._max_wait,
            on_retry=_log_retry,
        )

    async def _view(self, repo_path: str, branch: str, fields: str, timeout: float) -> dict[str, Any]:
        out = await self._query(repo_path, ["pr", "view", branch, "--json", fields], timeout)
        try:
            data = json.loads(out or "{}")
        except json.JSONDecodeError as exc:
            raise GitCommandError(f"Unexpected gh output for {fields}: {exc}") from exc
        return data if isinstance(data, dict) else {}

    async def check_review_decision(self, repo_path: str, branch: str) -> ReviewDecision:
        data = await self._view(repo_path, branch, "reviewDecision", REVIEW_QUERY_TIMEOUT)
        return parse_review_decision(str(data.get("reviewDecision") or ""))

    async def get_comment_count(self, repo_path: str, branch: str) -> int:
        data = await self._view(repo_path, branch, "comments,reviews", COMMENTS_QUERY_TIMEOUT)
        return count_comments(data)

    async def check_ci_status(self, repo_path: str, branch: str) -> CIStatus:
        data = await self._view(repo_path, branch, "statusCheckRollup", CI_QUERY_TIMEOUT)
        return parse_ci_rollup(list(data.get("statusCheckRollup") or []))

    async def fetch_review_comments(self, repo_path: str, branch: str) -> list[ReviewComment]:
        data = await self._view(repo_path, branch, "number,comments,reviews", COMMENTS_QUERY_TIMEOUT)
        inline: list[dict[str, Any]] = []
        number = data.get("number")
        if number:
            # gh fills {owner}/{repo} from the repository in cwd
            out = await self._query(
                repo_path, ["api", f"repos/{{owner}}/{{repo}}/pulls/{number}/comments"], COMMENTS_QUERY_TIMEOUT,
            )
            try:
                parsed = json.loads(out or "[]")
            except json.JSONDecodeError:
                log.warning("could not parse inline review comments", branch=branch)
                parsed = []
            inline = [c for c in parsed if isinstance(c, dict)] if isinstance(parsed, list) else []
        return parse_comments(data, inline)

    # ------------------------------------------------------------------
    # Mutations (not retried)
    # ------------------------------------------------------------------

    async def _commit_pending(self, worktree: str, message: str) -> bool:
        status = await run_command([self._git, "status", "--porcelain"], worktree, PUSH_TIMEOUT)
        if not status.strip():
            return False
        await run_command([self._git, "add", "-A"], worktree, PUSH_TIMEOUT)
        await run_command([self._git, "commit", "-m", message or DEFAULT_COMMIT_MESSAGE], worktree, PUSH_TIMEOUT)
        return True

    async def push_branch(self, repo_path: str, worktree: str, branch: str, commit_message: str = "") -> None:
        committed = await self._commit_pending(worktree, commit_message)
        await run_command([self._git, "push", "-u", "origin", branch], worktree, PUSH_TIMEOUT)
        log.info("pushed branch", branch=branch, committed=committed)

    async def create_pr(
        self, repo_path: str, worktree: str, branch: str, base_branch: str, title: str = "",
    ) -> str:
        await self.push_branch(repo_path, worktree, branch, title)
        args = [self._gh, "pr", "create", "--head", branch, "--title", title or branch, "--body", ""]
        if base_branch:
            args.extend(["--base", base_branch])
        out = await run_command(args, worktree, PR_CREATE_TIMEOUT)
        url = out.strip().splitlines()[-1] if out.strip() else ""
        log.info("created PR", branch=branch, url=url)
        return url

    async def merge_pr(self, repo_path: str, branch: str, method: str = "squash") -> None:
        if method not in MERGE_METHODS:
            raise GitCommandError(f"Unknown merge method: {method}")
        await run_command([self._gh, "pr", "merge", branch, f"--{method}"], repo_path, MERGE_TIMEOUT)
        log.info("merged PR", branch=branch, method=method)

    async def merge_to_parent(
        self,
        child_worktree: str,
        child_branch: str,
        parent_worktree: str,
        parent_branch: str,
        commit_message: str = "",
    ) -> str:
        """Commit the child's pending work and merge its branch into the parent worktree.

        A conflicted merge is left in place for the parent's agent to resolve.
        """
        await self._commit_pending(child_worktree, commit_message)
        try:
            await run_command(
                [self._git, "merge", child_branch, "--no-edit"], parent_worktree, MERGE_CHILD_TIMEOUT,
            )
        except GitCommandError as exc:
            conflicted = await self._conflicted_files(parent_worktree)
            if conflicted:
                raise GitCommandError(
                    f"merge conflict in {', '.join(conflicted)}",
                    command=exc.command,
                    returncode=exc.returncode,
                    stderr=exc.stderr,
                ) from exc
            raise
        log.info("merged child branch into parent", child=child_branch, parent=parent_branch)
        return f"Successfully merged {child_branch} into {parent_branch}"

    async def _conflicted_files(self, worktree: str) -> list[str]:
        try:
            out = await run_command(
                [self._git, "diff", "--name-only", "--diff-filter=U"], worktree, PUSH_TIMEOUT,
            )
        except GitCommandError:
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]
