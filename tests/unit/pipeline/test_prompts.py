"""Tests for pipeline prompt and transcript text."""

from __future__ import annotations

from attofleet.pipeline import prompts
from attofleet.protocol import ReviewComment


class TestTestFailurePrompt:
    def test_includes_attempt_and_output(self) -> None:
        text = prompts.format_test_failure_prompt("E   assert 1 == 2\n", 2, 3)
        assert text.startswith("Tests failed (attempt 2/3).")
        assert "```\nE   assert 1 == 2\n```" in text

    def test_long_output_keeps_tail(self) -> None:
        output = "head-marker\n" + "x" * 9000 + "\ntail-marker"
        text = prompts.format_test_failure_prompt(output, 1, 3)
        assert "tail-marker" in text
        assert "head-marker" not in text
        assert "...(truncated)" in text


class TestCommentsPrompt:
    def test_lists_each_comment_with_location(self) -> None:
        comments = [
            ReviewComment(author="alice", body="Rename this", path="src/app.py", line=12),
            ReviewComment(author="bob", body="Looks good overall"),
        ]
        text = prompts.format_pr_comments_prompt(comments)
        assert text.startswith("New PR review comments need to be addressed (2 comment(s)):")
        assert "--- Comment 1 by @alice ---\nFile: src/app.py:12\nRename this" in text
        assert "--- Comment 2 by @bob ---\nLooks good overall" in text

    def test_path_without_line(self) -> None:
        text = prompts.format_pr_comments_prompt([ReviewComment(author="a", body="b", path="README.md")])
        assert "File: README.md\n" in text


class TestSupervisorPrompt:
    def test_partial_progress(self) -> None:
        text = prompts.format_supervisor_prompt("api", True, 1, 3)
        assert text.startswith("Child session 'api' completed successfully. (1/3 children completed)")
        assert "Wait for all children" in text

    def test_all_done(self) -> None:
        text = prompts.format_supervisor_prompt("api", False, 3, 3)
        assert text.startswith("Child session 'api' completed (tests failed).\n")
        assert "(3/3" not in text
        assert "All 3 child sessions have completed" in text


def test_child_task_prompt() -> None:
    text = prompts.format_child_task_prompt("add pagination to /users")
    assert text.startswith("You are a child session")
    assert "\n\nTask: add pagination to /users\n\n" in text
    assert text.endswith("make sure all changes are committed.")


class TestLimitLine:
    def test_known_reasons(self) -> None:
        assert prompts.format_limit_line("turn_limit", max_turns=10, max_minutes=5) == (
            "[AUTONOMOUS LIMIT] Stopped after 10 turns (max: 10)"
        )
        assert prompts.format_limit_line("duration_limit", max_turns=10, max_minutes=5) == (
            "[AUTONOMOUS LIMIT] Stopped after 5 minutes (max: 5)"
        )

    def test_free_text_reason(self) -> None:
        assert prompts.format_limit_line("user stop", max_turns=1, max_minutes=1) == (
            "[AUTONOMOUS LIMIT] Stopped: user stop"
        )


def test_auto_line() -> None:
    assert prompts.auto_line("Waiting for review...") == "[AUTO] Waiting for review..."
