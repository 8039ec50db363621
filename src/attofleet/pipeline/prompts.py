"""Text the pipeline sends to agents and shows in transcripts."""

from __future__ import annotations

from attofleet.protocol import ReviewComment

AUTO_PREFIX = "[AUTO]"
LIMIT_PREFIX = "[AUTONOMOUS LIMIT]"

_OUTPUT_TAIL = 8000


def format_test_failure_prompt(output: str, iteration: int, max_retries: int) -> str:
    """Tell the agent its change broke the tests and what they printed.

    Long output keeps only the tail; failures are reported last.
    """
    text = output.strip()
    if len(text) > _OUTPUT_TAIL:
        text = "...(truncated)\n" + text[-_OUTPUT_TAIL:]
    return (
        f"Tests failed (attempt {iteration}/{max_retries}). "
        "Please fix the failures below and make sure the test suite passes.\n\n"
        f"```\n{text}\n```"
    )


def format_pr_comments_prompt(comments: list[ReviewComment]) -> str:
    lines = [f"New PR review comments need to be addressed ({len(comments)} comment(s)):", ""]
    for i, comment in enumerate(comments, start=1):
        lines.append(f"--- Comment {i} by @{comment.author} ---")
        if comment.path:
            location = f"{comment.path}:{comment.line}" if comment.line > 0 else comment.path
            lines.append(f"File: {location}")
        lines.append(comment.body)
        lines.append("")
    lines.append(
        "Please address each of these review comments. For code changes, make the "
        "necessary edits. For questions, provide a response and make any relevant code changes."
    )
    return "\n".join(lines)


def format_supervisor_prompt(child_name: str, tests_passed: bool, completed: int, total: int) -> str:
    status = "completed successfully" if tests_passed else "completed (tests failed)"
    if total > 0 and completed >= total:
        return (
            f"Child session '{child_name}' {status}.\n\n"
            f"All {total} child sessions have completed. You should now review the results, "
            "merge children to parent with `merge_child_to_parent`, and create a PR with "
            "`push_branch` and `create_pr`."
        )
    return (
        f"Child session '{child_name}' {status}. ({completed}/{total} children completed)\n\n"
        "Wait for all children to complete before merging or creating PRs."
    )


def format_child_task_prompt(task: str) -> str:
    return (
        "You are a child session working on a specific task assigned by a supervisor session.\n\n"
        f"Task: {task}\n\n"
        "Please complete this task. When you are done, make sure all changes are committed."
    )


def format_limit_line(reason: str, *, max_turns: int, max_minutes: int) -> str:
    if reason == "turn_limit":
        return f"{LIMIT_PREFIX} Stopped after {max_turns} turns (max: {max_turns})"
    if reason == "duration_limit":
        return f"{LIMIT_PREFIX} Stopped after {max_minutes} minutes (max: {max_minutes})"
    return f"{LIMIT_PREFIX} Stopped: {reason}"


def auto_line(text: str) -> str:
    return f"{AUTO_PREFIX} {text}"
