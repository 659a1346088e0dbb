"""Run summary reporting: JSON, YAML and text output."""

from multiscan.reporting.reporter import SummaryReporter

__all__ = ["SummaryReporter"]
