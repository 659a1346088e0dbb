"""Cumulative result aggregation across attempts.

AttemptResult captures what one attempt's report artifacts said; RunSummary
is the running total across all attempts. ``merge`` folds one attempt into
the summary and returns a new summary, leaving both inputs untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Sequence

# Outcome values carried by decoded test records
PASSING = "passing"
FAILED = "failed"

# Sentinel test subset meaning "the whole test plan"
ALL_TESTS = "all"


@dataclass(frozen=True)
class FailureDetail:
    """Failure message and source location (``file:line``) for a test."""

    message: str
    location: str

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "location": self.location}


@dataclass(frozen=True)
class TestRecord:
    """One decoded (identifier, outcome, detail) record from a report."""

    identifier: str
    outcome: str  # passing, failed
    detail: FailureDetail | None = None


def normalize_report_path(path: Any) -> str:
    """Normalize a report path so separator style does not matter."""
    return str(path).replace("\\", "/")


def _order_by_plan(
    identifiers: Sequence[str], plan: Sequence[str] | None
) -> tuple[str, ...]:
    """Stable-sort identifiers by their position in the test plan.

    Identifiers the plan does not mention keep their relative order and
    sort after every planned identifier.
    """
    if not plan:
        return tuple(identifiers)
    position = {name: i for i, name in enumerate(plan)}
    unplanned = len(position)
    return tuple(
        sorted(identifiers, key=lambda name: position.get(name, unplanned))
    )


@dataclass(frozen=True)
class AttemptResult:
    """Decoded outcome of a single attempt across all of its lanes."""

    attempt_index: int
    passing: frozenset[str] = frozenset()
    failed: tuple[str, ...] = ()
    failure_details: Mapping[str, FailureDetail] = field(default_factory=dict)
    report_files: tuple[str, ...] = ()

    @classmethod
    def from_records(
        cls,
        attempt_index: int,
        records: Iterable[TestRecord],
        report_files: Iterable[Any] = (),
        test_plan: Sequence[str] | None = None,
    ) -> AttemptResult:
        """Build an AttemptResult from decoded records.

        Records must arrive in decoder precedence order: the first detail
        seen for an identifier is the one kept. Failed identifiers keep
        duplicates (one per record) and are ordered by the attempt's test
        plan so that lane completion order never changes the result.

        Args:
            attempt_index: 1-based attempt number.
            records: Decoded records from every report of the attempt.
            report_files: Every artifact the attempt produced.
            test_plan: Identifiers the attempt was asked to run, if known.

        Returns:
            Immutable AttemptResult.
        """
        passing: set[str] = set()
        failed: list[str] = []
        details: dict[str, FailureDetail] = {}
        for record in records:
            if record.outcome == PASSING:
                passing.add(record.identifier)
            elif record.outcome == FAILED:
                failed.append(record.identifier)
                if record.detail is not None:
                    details.setdefault(record.identifier, record.detail)
            else:
                raise ValueError(f"Unknown test outcome: {record.outcome}")

        return cls(
            attempt_index=attempt_index,
            passing=frozenset(passing),
            failed=_order_by_plan(failed, test_plan),
            failure_details=details,
            report_files=tuple(
                sorted(normalize_report_path(p) for p in report_files)
            ),
        )

    @property
    def total_tests(self) -> int:
        return len(self.passing) + len(self.failed)


@dataclass(frozen=True)
class RunSummary:
    """Cumulative results of every attempt merged so far.

    ``result`` is ``failed_testcount == 0`` unless ``result_override`` pins
    it to an explicit success or failure.
    """

    passing_testcount: int = 0
    passing_tests: frozenset[str] = frozenset()
    failed_tests: tuple[str, ...] = ()
    failure_details: Mapping[str, FailureDetail] = field(default_factory=dict)
    report_files: frozenset[str] = frozenset()
    attempt_count: int = 0
    result_override: bool | None = None

    @property
    def failed_testcount(self) -> int:
        return len(self.failed_tests)

    @property
    def total_tests(self) -> int:
        return self.passing_testcount + self.failed_testcount

    @property
    def total_retry_count(self) -> int:
        return max(self.attempt_count - 1, 0)

    @property
    def result(self) -> bool:
        if self.result_override is not None:
            return self.result_override
        return self.failed_testcount == 0

    def has_report_file(self, path: Any) -> bool:
        """Check whether *path* is among the reported files.

        Windows-style and POSIX-style separators compare equal.
        """
        return normalize_report_path(path) in self.report_files

    def with_result_override(self, result: bool | None) -> RunSummary:
        """Return a copy whose ``result`` is pinned to *result*."""
        return replace(self, result_override=result)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the public summary contract."""
        return {
            "result": self.result,
            "total_tests": self.total_tests,
            "passing_testcount": self.passing_testcount,
            "failed_testcount": self.failed_testcount,
            "failed_tests": list(self.failed_tests),
            "failure_details": {
                name: detail.to_dict()
                for name, detail in self.failure_details.items()
            },
            "total_retry_count": self.total_retry_count,
            "report_files": sorted(self.report_files),
        }


def merge(cumulative: RunSummary, attempt: AttemptResult) -> RunSummary:
    """Fold one attempt into the cumulative summary.

    Failure events are appended with duplicates preserved, so a test that
    fails on every retry is counted once per attempt. The first detail
    recorded for an identifier wins; later attempts never overwrite it.

    Args:
        cumulative: Summary of all previous attempts.
        attempt: The attempt that just finished.

    Returns:
        A new RunSummary; neither argument is modified.
    """
    details = dict(cumulative.failure_details)
    for name, detail in attempt.failure_details.items():
        details.setdefault(name, detail)

    return replace(
        cumulative,
        passing_testcount=cumulative.passing_testcount + len(attempt.passing),
        passing_tests=cumulative.passing_tests | attempt.passing,
        failed_tests=cumulative.failed_tests + attempt.failed,
        failure_details=details,
        report_files=cumulative.report_files | frozenset(
            normalize_report_path(p) for p in attempt.report_files
        ),
        attempt_count=cumulative.attempt_count + 1,
    )
