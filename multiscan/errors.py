"""Error taxonomy for multiscan runs.

Only ConfigurationError propagates before any work begins. Lane and decode
faults are recovered locally and surface as reduced counts; test failures are
data in the RunSummary and are escalated to TestsFailedError only when the
caller asks for it.
"""

from __future__ import annotations


class MultiScanError(Exception):
    """Base class for all errors raised by multiscan."""


class ConfigurationError(MultiScanError):
    """The run configuration is self-contradictory or invalid.

    Raised by validation before the first build or attempt.
    """

    def __init__(self, message: str, options: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.options = options


class BuildFailedError(MultiScanError):
    """The build-for-testing step reported failure."""


class TestsFailedError(MultiScanError):
    """Structured test failure raised when fail_build is requested."""

    def __init__(self, failed_count: int) -> None:
        super().__init__(
            f"Tests have failed: {failed_count} failed test"
            f"{'' if failed_count == 1 else 's'}"
        )
        self.failed_count = failed_count
