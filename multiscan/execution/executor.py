"""Command-line test executor and builder.

Both run an external command (typically ``xcodebuild``) and report success
as exit code 0. The test executor runs it with ``subprocess.Popen`` so a
cancelled lane can kill it. Command templates are shell-split and each
argument is formatted with the lane's placeholders:

    {output_directory}  lane artifact directory
    {destination}       the lane's execution target destination
    {attempt}, {lane}   1-based attempt index, 0-based lane index
    {only_testing}      the lane's tests; a token that is exactly
                        ``{only_testing}`` expands to one
                        ``-only-testing:<id>`` argument per test and is
                        dropped when the lane runs all tests
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from typing import Any, Callable, Sequence

from multiscan.analysis.aggregator import ALL_TESTS
from multiscan.execution.lanes import LaneRun

logger = logging.getLogger(__name__)

ONLY_TESTING_TOKEN = "{only_testing}"


def _split(command: str | Sequence[str]) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)


def expand_command(template: str | Sequence[str], lane_run: LaneRun) -> list[str]:
    """Expand a command template for one lane.

    Returns:
        Argument list ready for ``subprocess.run``.
    """
    tests = lane_run.tests
    values = {
        "output_directory": str(lane_run.output_directory),
        "destination": lane_run.target.destination or "",
        "attempt": str(lane_run.attempt_index),
        "lane": str(lane_run.lane_index),
        "only_testing": "" if tests == ALL_TESTS else ",".join(tests),
    }

    args: list[str] = []
    for token in _split(template):
        if token == ONLY_TESTING_TOKEN:
            if tests != ALL_TESTS:
                args.extend(f"-only-testing:{name}" for name in tests)
            continue
        args.append(token.format(**values))
    return args


class CommandTestExecutor:
    """Runs one lane's tests by executing a command template.

    The command is polled every ``poll_interval`` seconds and killed when
    the lane is cancelled or its timeout expires.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        poll_interval: float = 0.1,
    ) -> None:
        self.command = command
        self._popen = popen
        self.poll_interval = poll_interval

    def __call__(self, lane_run: LaneRun) -> bool:
        """Execute the lane and return True when the command exits 0.

        Raises:
            OSError: If the command cannot be started; the scheduler
                records this as a failed lane.
        """
        args = expand_command(self.command, lane_run)
        logger.debug("Lane %d: %s", lane_run.lane_index, shlex.join(args))

        start_time = time.monotonic()
        proc = self._popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        while True:
            try:
                output, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                elapsed = time.monotonic() - start_time
                expired = lane_run.timeout is not None and elapsed > lane_run.timeout
                if expired or lane_run.cancelled.is_set():
                    proc.kill()
                    proc.communicate()
                    logger.warning(
                        "Lane %d test run %s after %.1f seconds",
                        lane_run.lane_index,
                        "timed out" if expired else "was cancelled",
                        elapsed,
                    )
                    return False

        duration = time.monotonic() - start_time
        log_path = lane_run.output_directory / "testrun.log"
        try:
            log_path.write_text(output or "")
        except OSError as e:
            logger.warning("Could not write %s: %s", log_path, e)

        logger.info(
            "Attempt %d lane %d finished in %.1fs (exit %d)",
            lane_run.attempt_index, lane_run.lane_index, duration, proc.returncode,
        )
        return proc.returncode == 0


class CommandBuilder:
    """Builds the app and its test target by executing a command."""

    def __init__(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self._run = run

    def __call__(self, options: dict[str, Any]) -> bool:
        """Run the build command; True when it exits 0."""
        args = _split(self.command)
        try:
            proc = self._run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error("Build timed out after %s seconds", self.timeout)
            return False
        except FileNotFoundError:
            logger.error("Build command not found: %s", args[0] if args else "")
            return False

        if proc.returncode != 0:
            logger.error(
                "Build failed (exit %d): %s",
                proc.returncode, (proc.stderr or "").strip()[-2000:],
            )
        return proc.returncode == 0
