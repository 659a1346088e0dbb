"""Retry planning between attempts.

After each attempt the planner decides whether another attempt runs and
which tests it covers. A retry covers only what failed in the attempt that
just finished, so each retry narrows scope rather than re-running everything
that ever failed.

States:
- no_failures: the attempt had no failures; stop.
- budget_exhausted: failures remain but try_count is used up; stop.
- continuing: retry the attempt's failed tests.
"""

from __future__ import annotations

from dataclasses import dataclass

from multiscan.analysis.aggregator import AttemptResult

NO_FAILURES = "no_failures"
BUDGET_EXHAUSTED = "budget_exhausted"
CONTINUING = "continuing"


@dataclass(frozen=True)
class RetryPlan:
    """Transition computed after one attempt."""

    state: str  # no_failures, budget_exhausted, continuing
    next_attempt_index: int
    next_test_subset: tuple[str, ...] = ()

    @property
    def should_continue(self) -> bool:
        return self.state == CONTINUING


def plan(
    attempt_index: int,
    attempt_result: AttemptResult,
    max_try_count: int,
) -> RetryPlan:
    """Decide whether attempt ``attempt_index + 1`` runs, and on what.

    Args:
        attempt_index: 1-based index of the attempt that just finished.
        attempt_result: Decoded outcome of that attempt.
        max_try_count: Total attempts allowed (try_count).

    Returns:
        RetryPlan. ``next_test_subset`` holds the attempt's failed tests,
        de-duplicated in first-failure order, when continuing.
    """
    next_index = attempt_index + 1
    if not attempt_result.failed:
        return RetryPlan(NO_FAILURES, next_index)
    if attempt_index >= max_try_count:
        return RetryPlan(BUDGET_EXHAUSTED, next_index)
    return RetryPlan(
        CONTINUING,
        next_index,
        tuple(dict.fromkeys(attempt_result.failed)),
    )
