"""Report decoding and cumulative result aggregation."""

from multiscan.analysis.aggregator import (
    ALL_TESTS,
    FAILED,
    PASSING,
    AttemptResult,
    FailureDetail,
    RunSummary,
    TestRecord,
    merge,
)
from multiscan.analysis.decoders import REPORT_FORMATS, ReportFormat, decode_reports

__all__ = [
    "ALL_TESTS",
    "AttemptResult",
    "FAILED",
    "FailureDetail",
    "PASSING",
    "REPORT_FORMATS",
    "ReportFormat",
    "RunSummary",
    "TestRecord",
    "decode_reports",
    "merge",
]
