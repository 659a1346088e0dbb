"""Run summary reporting.

Writes the cumulative RunSummary as JSON or YAML, and renders the
human-readable table printed at the end of a run. The serialized keys
(result, total_tests, passing_testcount, failed_testcount, failed_tests,
failure_details, total_retry_count, report_files) are the contract other
tooling reads.
"""

from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any

import yaml

from multiscan.analysis.aggregator import RunSummary


class SummaryReporter:
    """Generates reports from a RunSummary."""

    def __init__(self, summary: RunSummary) -> None:
        self.summary = summary

    def generate_report(self) -> dict[str, Any]:
        """Generate the report dict: summary contract plus a timestamp."""
        report = self.summary.to_dict()
        report["generated_at"] = datetime.datetime.now(
            datetime.timezone.utc
        ).isoformat()
        return report

    def write_json(self, path: Path) -> None:
        """Write the report as a JSON file.

        Args:
            path: File path to write the JSON report to.
        """
        report = self.generate_report()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(report, f, indent=2)
            f.write("\n")

    def write_yaml(self, path: Path) -> None:
        """Write the report as a YAML file.

        Args:
            path: File path to write the YAML report to.
        """
        report = self.generate_report()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(
                report,
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

    def write(self, path: Path) -> None:
        """Write YAML for ``.yaml``/``.yml`` paths, JSON otherwise."""
        if path.suffix in (".yaml", ".yml"):
            self.write_yaml(path)
        else:
            self.write_json(path)

    def format_summary(self) -> str:
        """Render the summary as a two-column text table."""
        s = self.summary
        rows = [
            ("result", "passed" if s.result else "failed"),
            ("total_tests", str(s.total_tests)),
            ("passing_testcount", str(s.passing_testcount)),
            ("failed_testcount", str(s.failed_testcount)),
            ("total_retry_count", str(s.total_retry_count)),
            ("report_files", str(len(s.report_files))),
        ]
        width = max(len(key) for key, _ in rows)
        lines = ["Run summary", "=" * (width + 12)]
        lines.extend(f"  {key:<{width}}  {value}" for key, value in rows)

        if s.failed_tests:
            lines.append("")
            lines.append("Failed tests:")
            for name in dict.fromkeys(s.failed_tests):
                count = s.failed_tests.count(name)
                suffix = f" (x{count})" if count > 1 else ""
                lines.append(f"  {name}{suffix}")
                detail = s.failure_details.get(name)
                if detail is not None:
                    lines.append(f"      {detail.location}: {detail.message}")
        return "\n".join(lines)
