"""Retry-and-aggregation run orchestrator.

Drives a whole run: validate the configuration, build once, then loop over
attempts. Each attempt fans out across lanes, decodes the reports it
produced, and is folded into the cumulative RunSummary. The retry planner
decides whether another attempt runs on the tests that just failed.
Attempts are strictly sequential; the environment is reset only between
attempts, and after the last one only when cleanup_on_exit is set.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Sequence

from multiscan.analysis.aggregator import ALL_TESTS, AttemptResult, RunSummary, merge
from multiscan.analysis.decoders import (
    GlobLookup,
    ReportFormat,
    collect_reports,
    decode_reports,
    glob_patterns,
)
from multiscan.errors import TestsFailedError
from multiscan.execution.lanes import (
    LaneOutcome,
    LaneScheduler,
    TestExecutor,
    attempt_directory,
    lane_targets,
)
from multiscan.lifecycle.config import RunConfig
from multiscan.lifecycle.environment import EnvironmentReset
from multiscan.lifecycle.preparer import Builder, ConfigPreparer
from multiscan.lifecycle.retry import RetryPlan, plan

logger = logging.getLogger(__name__)

# Test discoverer: () -> identifiers in the built test target
TestDiscoverer = Callable[[], Sequence[str]]


class RunOrchestrator:
    """Runs a test suite with retries of failed tests across parallel lanes."""

    def __init__(
        self,
        config: RunConfig,
        executor: TestExecutor,
        builder: Builder | None = None,
        environment: EnvironmentReset | None = None,
        discoverer: TestDiscoverer | None = None,
        testrun_started: Callable[..., Any] | None = None,
        glob: GlobLookup | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.builder = builder
        self.environment = environment or EnvironmentReset(
            quit_simulators=config.quit_simulators,
            quit_command=config.quit_simulators_command,
            log_globs=config.simulator_log_globs,
        )
        self.discoverer = discoverer
        self.testrun_started = testrun_started
        self.glob = glob
        self.plans: list[RetryPlan] = []

    def run(self) -> RunSummary:
        """Execute the run and return the cumulative summary.

        Raises:
            ConfigurationError: Before any build or attempt, if the
                configuration is invalid.
            BuildFailedError: If the build-for-testing step fails.
        """
        self.config.validate(self.testrun_started)

        options = ConfigPreparer(self.config, self.builder).prepare()
        scheduler = LaneScheduler(
            executor=self.executor,
            targets=lane_targets(
                self.config.destinations, self.config.parallel_testrun_count
            ),
            output_directory=self.config.output_directory,
            batch_count=self.config.batch_count,
            options=options,
            timeout=self.config.testrun_timeout,
            testrun_started=self.testrun_started,
        )

        tests = self._resolve_test_plan()
        summary = RunSummary()
        attempt_index = 1
        try:
            while True:
                attempt, outcomes, lost = self._run_attempt(
                    scheduler, attempt_index, tests
                )
                summary = merge(summary, attempt)

                retry = plan(attempt_index, attempt, self.config.try_count)
                self.plans.append(retry)
                logger.info(
                    "Attempt %d/%d: %d passing, %d failed (%s)",
                    attempt_index, self.config.try_count,
                    len(attempt.passing), len(attempt.failed), retry.state,
                )
                if not retry.should_continue:
                    break

                self.environment.reset()
                tests = retry.next_test_subset
                attempt_index = retry.next_attempt_index
        finally:
            if self.config.cleanup_on_exit:
                self.environment.reset()

        return self._apply_result_policy(summary, outcomes, lost)

    def _resolve_test_plan(self) -> Sequence[str] | str:
        """Determine which tests the first attempt runs.

        Explicit ``only_testing`` wins; otherwise the discoverer enumerates
        the built target. Invocation based tests cannot be enumerated, so
        they always run as ALL_TESTS.
        """
        only_testing = self.config.only_testing
        if only_testing:
            return tuple(only_testing)
        if self.discoverer is not None and not self.config.invocation_based_tests:
            return tuple(self.discoverer())
        return ALL_TESTS

    def _run_attempt(
        self,
        scheduler: LaneScheduler,
        attempt_index: int,
        tests: Sequence[str] | str,
    ) -> tuple[AttemptResult, list[LaneOutcome], list[int]]:
        """Run one attempt's lanes and decode everything they produced.

        Artifacts of timed-out lanes are ignored, so such a lane counts as
        zero reports.

        Returns:
            Tuple of (attempt result, lane outcomes, indexes of lanes that
            failed without leaving a decodable report).
        """
        outcomes = scheduler.execute(attempt_index, tests)
        failed_lanes = [o.lane_index for o in outcomes if not o.succeeded]
        if failed_lanes:
            logger.info(
                "Attempt %d: lanes %s did not succeed",
                attempt_index, ", ".join(str(i) for i in failed_lanes),
            )

        directory = attempt_directory(self.config.output_directory, attempt_index)
        patterns = glob_patterns(self.config.output_types, self.config.output_files)
        reports = collect_reports(
            str(directory),
            patterns,
            glob=self.glob,
            exclude=[o.output_directory for o in outcomes if o.timed_out],
        )
        records, report_files = decode_reports(reports)

        attempt = AttemptResult.from_records(
            attempt_index,
            records,
            report_files,
            test_plan=None if isinstance(tests, str) else tests,
        )
        return attempt, outcomes, _lost_lanes(outcomes, reports)

    def _apply_result_policy(
        self,
        summary: RunSummary,
        outcomes: list[LaneOutcome],
        lost: list[int],
    ) -> RunSummary:
        """Decide ``result`` according to the configured result_policy."""
        policy = self.config.result_policy
        if policy == "success":
            return summary.with_result_override(True)
        if policy == "failure":
            return summary.with_result_override(False)
        if policy == "lanes":
            return summary.with_result_override(all(o.succeeded for o in outcomes))
        if lost:
            logger.warning(
                "Lanes %s of the final attempt left no reports; "
                "marking the run failed",
                ", ".join(str(i) for i in lost),
            )
            return summary.with_result_override(False)
        return summary


def _lost_lanes(
    outcomes: list[LaneOutcome],
    reports: list[tuple[ReportFormat, list[str]]],
) -> list[int]:
    """Lanes that failed and left no decodable report behind."""
    reported = {
        os.path.normpath(os.path.dirname(path))
        for fmt, paths in reports
        if fmt.decoder is not None
        for path in paths
    }
    return [
        o.lane_index
        for o in outcomes
        if not o.succeeded
        and os.path.normpath(str(o.output_directory)) not in reported
    ]


def apply_failure_policy(summary: RunSummary | None, fail_build: bool) -> RunSummary | None:
    """Escalate a failed run to TestsFailedError when fail_build is set.

    An absent summary is never escalated.

    Raises:
        TestsFailedError: When fail_build is set and the run failed.
    """
    if fail_build and summary is not None and not summary.result:
        raise TestsFailedError(summary.failed_testcount)
    return summary
