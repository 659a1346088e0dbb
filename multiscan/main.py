"""Entry point for multiscan.

Parses command-line arguments, runs the test suite with retries across
parallel lanes, prints the run summary, and exits non-zero when the run
failed and --fail-build is in effect (the default).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from multiscan.errors import ConfigurationError, MultiScanError, TestsFailedError
from multiscan.execution.executor import CommandBuilder, CommandTestExecutor
from multiscan.lifecycle.config import RESULT_POLICIES, RunConfig
from multiscan.reporting.reporter import SummaryReporter
from multiscan.runner import RunOrchestrator, apply_failure_policy


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="multiscan - run a test suite, retrying failed tests "
                    "across parallel lanes"
    )
    parser.add_argument(
        "--test-command",
        required=True,
        help="Command template that runs one lane's tests; supports "
             "{output_directory}, {destination}, {only_testing}, "
             "{attempt} and {lane}",
    )
    parser.add_argument(
        "--build-command",
        default=None,
        help="Command that builds the app and test target for testing",
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="YAML or JSON file overriding default settings",
    )
    parser.add_argument(
        "--try-count",
        type=int,
        default=None,
        help="Maximum attempts; retries run only the failed tests (default: 1)",
    )
    parser.add_argument(
        "--parallel-testrun-count",
        type=int,
        default=None,
        help="Number of parallel lanes (default: 1)",
    )
    parser.add_argument(
        "--batch-count",
        type=int,
        default=None,
        help="Split the test plan into this many batches",
    )
    parser.add_argument(
        "--invocation-based-tests",
        action="store_true",
        default=None,
        help="Tests are invocation based and cannot be enumerated",
    )
    parser.add_argument(
        "--output-types",
        default=None,
        help="Comma-separated report formats (default: junit)",
    )
    parser.add_argument(
        "--output-files",
        default=None,
        help="Comma-separated report file names, paired with --output-types",
    )
    parser.add_argument(
        "--output-directory",
        default=None,
        help="Directory receiving report artifacts (default: test_output)",
    )
    parser.add_argument(
        "--only-testing",
        default=None,
        help="Comma-separated test identifiers to run",
    )
    parser.add_argument(
        "--destination",
        action="append",
        default=None,
        help="Execution target destination; repeat once per lane",
    )
    parser.add_argument(
        "--fail-build",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Exit non-zero when tests fail (default: on)",
    )
    parser.add_argument(
        "--no-quit-simulators",
        dest="quit_simulators",
        action="store_false",
        default=None,
        help="Do not quit simulators between attempts",
    )
    parser.add_argument(
        "--cleanup-on-exit",
        action="store_true",
        default=None,
        help="Reset the simulator environment after the last attempt",
    )
    parser.add_argument(
        "--test-without-building",
        action="store_true",
        default=None,
        help="Skip the build step and test an existing build",
    )
    parser.add_argument(
        "--testrun-timeout",
        type=float,
        default=None,
        help="Per-lane timeout in seconds",
    )
    parser.add_argument(
        "--result-policy",
        choices=RESULT_POLICIES,
        default=None,
        help="How the run result is decided (default: tests)",
    )
    parser.add_argument(
        "--summary-output",
        type=Path,
        default=None,
        help="Write the run summary to this file (.yaml/.yml for YAML, "
             "JSON otherwise)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Log each attempt and lane",
    )
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map parsed flags onto RunConfig keys (unset flags are None)."""
    return {
        "try_count": args.try_count,
        "parallel_testrun_count": args.parallel_testrun_count,
        "batch_count": args.batch_count,
        "invocation_based_tests": args.invocation_based_tests,
        "output_types": args.output_types,
        "output_files": args.output_files,
        "output_directory": args.output_directory,
        "only_testing": args.only_testing,
        "destination": args.destination,
        "fail_build": args.fail_build,
        "quit_simulators": args.quit_simulators,
        "cleanup_on_exit": args.cleanup_on_exit,
        "test_without_building": args.test_without_building,
        "testrun_timeout": args.testrun_timeout,
        "result_policy": args.result_policy,
    }


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = RunConfig(args.config_file, overrides=_overrides(args))
    orchestrator = RunOrchestrator(
        config,
        executor=CommandTestExecutor(args.test_command),
        builder=CommandBuilder(args.build_command) if args.build_command else None,
    )

    try:
        summary = orchestrator.run()
    except ConfigurationError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2
    except MultiScanError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    reporter = SummaryReporter(summary)
    print(reporter.format_summary())
    if args.summary_output:
        reporter.write(args.summary_output)
        print(f"\nSummary written to {args.summary_output}")

    try:
        apply_failure_policy(summary, config.fail_build)
    except TestsFailedError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
