"""Run a repository's configured test command inside a session worktree."""

from __future__ import annotations

import asyncio

from attofleet.logger import session_logger
from attofleet.pipeline.events import TestRunResult

MAX_OUTPUT_CHARS = 50_000


async def run_tests(
    session_id: str,
    worktree: str,
    command: str,
    iteration: int,
    *,
    timeout: float | None = None,
) -> TestRunResult:
    """Run *command* through ``sh -c`` and report the outcome as an event.

    stdout and stderr are merged in the order they were written. An empty
    command, a spawn failure or a timeout all count as a failed run.
    """
    slog = session_logger(__name__, session_id)
    if not command.strip():
        return TestRunResult(session_id, exit_code=1, iteration=iteration, output="No test command configured")

    slog.info("running tests", iteration=iteration, command=command)
    try:
        proc = await asyncio.create_subprocess_exec(
            "sh", "-c", command,
            cwd=worktree or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        slog.warning("could not start test command", error=str(exc))
        return TestRunResult(session_id, exit_code=1, iteration=iteration, output=f"Failed to run tests: {exc}")

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        stdout, _ = await proc.communicate()
        output = stdout.decode(errors="replace") + f"\n... (killed after {timeout}s)"
        return TestRunResult(session_id, exit_code=124, iteration=iteration, output=output[-MAX_OUTPUT_CHARS:])

    output = stdout.decode(errors="replace")
    if len(output) > MAX_OUTPUT_CHARS:
        output = "... (truncated)\n" + output[-MAX_OUTPUT_CHARS:]
    exit_code = proc.returncode if proc.returncode is not None else 1
    slog.info("tests finished", iteration=iteration, exit_code=exit_code)
    return TestRunResult(session_id, exit_code=exit_code, iteration=iteration, output=output)
