"""Unit tests for the summary reporter."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import yaml

from multiscan.analysis.aggregator import AttemptResult, FailureDetail, RunSummary, merge
from multiscan.reporting.reporter import SummaryReporter

TAILS = "BagOfTests/CoinTossingUITests/testResultIsTails"
MISSILES = "BagOfTests/AtomicBoy/testWristMissles"

CONTRACT_KEYS = {
    "result",
    "total_tests",
    "passing_testcount",
    "failed_testcount",
    "failed_tests",
    "failure_details",
    "total_retry_count",
    "report_files",
}


def _summary() -> RunSummary:
    first = AttemptResult(
        attempt_index=1,
        passing=frozenset({"BagOfTests/AtomicBoy/testExample"}),
        failed=(MISSILES, TAILS),
        failure_details={
            TAILS: FailureDetail("XCTAssertEqual failed", "CoinTossingUITests.swift:38"),
        },
        report_files=("test_output/attempt-1/lane-0/report.xml",),
    )
    second = AttemptResult(attempt_index=2, failed=(TAILS,))
    return merge(merge(RunSummary(), first), second)


class TestGenerateReport:
    """Tests for the serialized report."""

    def test_contract_keys(self):
        """The report carries every contract key plus a timestamp."""
        report = SummaryReporter(_summary()).generate_report()
        assert CONTRACT_KEYS <= set(report)
        assert "generated_at" in report

    def test_values(self):
        """Counts reflect every attempt."""
        report = SummaryReporter(_summary()).generate_report()
        assert report["result"] is False
        assert report["total_tests"] == 4
        assert report["failed_testcount"] == 3
        assert report["failed_tests"] == [MISSILES, TAILS, TAILS]
        assert report["total_retry_count"] == 1
        assert report["failure_details"][TAILS] == {
            "message": "XCTAssertEqual failed",
            "location": "CoinTossingUITests.swift:38",
        }

    def test_empty_summary(self):
        """An empty summary passes with zero counts."""
        report = SummaryReporter(RunSummary()).generate_report()
        assert report["result"] is True
        assert report["total_tests"] == 0
        assert report["failed_tests"] == []


class TestWrite:
    """Tests for writing the report to disk."""

    def test_write_json(self):
        """JSON output loads back with the contract keys."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "out" / "summary.json"
            SummaryReporter(_summary()).write_json(path)
            data = json.loads(path.read_text())
        assert CONTRACT_KEYS <= set(data)
        assert data["failed_testcount"] == 3

    def test_write_yaml(self):
        """YAML output keeps the contract key order."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "summary.yaml"
            SummaryReporter(_summary()).write_yaml(path)
            data = yaml.safe_load(path.read_text())
        assert list(data)[0] == "result"
        assert data["report_files"] == ["test_output/attempt-1/lane-0/report.xml"]

    def test_write_picks_format_by_suffix(self):
        """write() emits YAML for .yml and JSON otherwise."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yml = Path(tmpdir) / "summary.yml"
            js = Path(tmpdir) / "summary.out"
            reporter = SummaryReporter(_summary())
            reporter.write(yml)
            reporter.write(js)
            assert yaml.safe_load(yml.read_text())["total_tests"] == 4
            assert json.loads(js.read_text())["total_tests"] == 4


class TestFormatSummary:
    """Tests for the printed summary table."""

    def test_table_rows(self):
        """The table lists result and counts."""
        text = SummaryReporter(_summary()).format_summary()
        assert "result" in text
        assert "failed" in text
        assert "total_retry_count  1" in text

    def test_repeated_failures_counted(self):
        """A test failing on several attempts is listed once with a count."""
        text = SummaryReporter(_summary()).format_summary()
        assert f"{TAILS} (x2)" in text
        assert f"  {MISSILES}\n" in text
        assert "CoinTossingUITests.swift:38: XCTAssertEqual failed" in text

    def test_passing_run_has_no_failed_section(self):
        """A passing run prints no failed tests."""
        text = SummaryReporter(RunSummary()).format_summary()
        assert "passed" in text
        assert "Failed tests:" not in text
