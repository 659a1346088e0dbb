"""Run configuration for multiscan.

Settings are layered: DEFAULT_CONFIG, then an optional override file (YAML,
or JSON since it is a YAML subset), then explicit overrides such as parsed
command-line flags. ``validate()`` is the single validation pass; it runs
once, before the build and the first attempt.
"""

from __future__ import annotations

import inspect
from pathlib import Path
from typing import Any, Callable

import yaml

from multiscan.analysis.decoders import REPORT_FORMATS, split_option_list
from multiscan.errors import ConfigurationError

# Default configuration values
DEFAULT_CONFIG: dict[str, Any] = {
    "try_count": 1,
    "parallel_testrun_count": 1,
    "batch_count": None,
    "invocation_based_tests": False,
    "output_types": "junit",
    "output_files": "report.xml",
    "output_directory": "test_output",
    "result_bundle": False,
    "fail_build": True,
    "result_policy": "tests",
    "quit_simulators": True,
    "cleanup_on_exit": False,
    "test_without_building": False,
    "skip_build": False,
    "disable_xcpretty": False,
    "only_testing": None,
    "destination": None,
    "testrun_timeout": None,
    "simulator_log_globs": [
        "~/Library/Logs/CoreSimulator/*/system.log",
    ],
    "quit_simulators_command": [
        "killall", "-9", "com.apple.CoreSimulator.CoreSimulatorService",
    ],
}

# Options consumed by multiscan itself and never forwarded to the builder or
# the test executor
ORCHESTRATOR_ONLY_OPTIONS = frozenset({
    "try_count",
    "parallel_testrun_count",
    "batch_count",
    "fail_build",
    "result_policy",
    "quit_simulators",
    "cleanup_on_exit",
    "disable_xcpretty",
    "simulator_log_globs",
    "quit_simulators_command",
    "testrun_timeout",
})

# How RunSummary.result is decided:
#   tests    failed_testcount == 0, and the final attempt lost no lane
#   lanes    every lane of the final attempt succeeded
#   success  always true
#   failure  always false
RESULT_POLICIES = ("tests", "lanes", "success", "failure")


def _positive_int(data: dict[str, Any], key: str) -> None:
    value = data.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(
            f"{key} must be a positive integer, got {value!r}", (key,)
        )


class RunConfig:
    """Layered configuration for one multiscan run."""

    def __init__(
        self,
        path: Path | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> None:
        self.path = path
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        if path is not None and path.exists():
            self._load()
        for key, value in (overrides or {}).items():
            if value is not None:
                self._data[key] = value

    def _load(self) -> None:
        """Load override settings from the config file."""
        assert self.path is not None
        try:
            data = yaml.safe_load(self.path.read_text())
            if isinstance(data, dict):
                self._data = {**self._data, **data}
        except (yaml.YAMLError, OSError):
            self._data = dict(DEFAULT_CONFIG)

    @property
    def config(self) -> dict[str, Any]:
        """Get the full configuration dict."""
        return dict(self._data)

    def forwarded_options(self) -> dict[str, Any]:
        """Options passed through to the builder and the test executor.

        With more than one lane, multiscan owns the parallelism, so the
        test tool's own ``concurrent_workers`` setting is dropped.
        """
        options = {
            key: value
            for key, value in self._data.items()
            if key not in ORCHESTRATOR_ONLY_OPTIONS
        }
        if self.parallel_testrun_count > 1:
            options.pop("concurrent_workers", None)
        return options

    @property
    def try_count(self) -> int:
        return int(self._data.get("try_count") or 1)

    @property
    def parallel_testrun_count(self) -> int:
        return int(self._data.get("parallel_testrun_count") or 1)

    @property
    def batch_count(self) -> int | None:
        val = self._data.get("batch_count")
        return int(val) if val is not None else None

    @property
    def invocation_based_tests(self) -> bool:
        return bool(self._data.get("invocation_based_tests"))

    @property
    def output_types(self) -> list[str]:
        types = split_option_list(self._data.get("output_types"))
        if self.result_bundle and "xcresult" not in types:
            types.append("xcresult")
        return types

    @property
    def output_files(self) -> list[str]:
        files = split_option_list(self._data.get("output_files"))
        if self.result_bundle and "xcresult" not in split_option_list(
            self._data.get("output_types")
        ):
            files.append("report.xcresult")
        return files

    @property
    def output_directory(self) -> Path:
        return Path(str(self._data.get("output_directory") or "test_output"))

    @property
    def result_bundle(self) -> bool:
        return bool(self._data.get("result_bundle"))

    @property
    def fail_build(self) -> bool:
        return bool(self._data.get("fail_build"))

    @property
    def result_policy(self) -> str:
        return str(self._data.get("result_policy") or "tests")

    @property
    def quit_simulators(self) -> bool:
        return bool(self._data.get("quit_simulators"))

    @property
    def cleanup_on_exit(self) -> bool:
        return bool(self._data.get("cleanup_on_exit"))

    @property
    def test_without_building(self) -> bool:
        return bool(self._data.get("test_without_building"))

    @property
    def skip_build(self) -> bool:
        return bool(self._data.get("skip_build"))

    @property
    def only_testing(self) -> list[str] | None:
        val = self._data.get("only_testing")
        if val is None:
            return None
        return split_option_list(val)

    @property
    def destinations(self) -> list[str]:
        """Destinations as a list; a single string is one destination."""
        val = self._data.get("destination")
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    @property
    def testrun_timeout(self) -> float | None:
        val = self._data.get("testrun_timeout")
        return float(val) if val is not None else None

    @property
    def simulator_log_globs(self) -> list[str]:
        return list(self._data.get("simulator_log_globs") or [])

    @property
    def quit_simulators_command(self) -> list[str]:
        return list(self._data.get("quit_simulators_command") or [])

    def validate(self, testrun_started: Any = None) -> None:
        """Check the configuration once, before any work starts.

        Args:
            testrun_started: Optional hook called right before each lane
                runs. It must accept no argument or a single LaneRun.

        Raises:
            ConfigurationError: On the first problem found.
        """
        if self.batch_count is not None and self.invocation_based_tests:
            raise ConfigurationError(
                "batch_count and invocation_based_tests are mutually "
                "exclusive: invocation based tests do not expose a test "
                "count to batch",
                ("batch_count", "invocation_based_tests"),
            )

        for key in ("try_count", "parallel_testrun_count", "batch_count"):
            _positive_int(self._data, key)

        unknown = [t for t in self.output_types if t not in REPORT_FORMATS]
        if unknown:
            raise ConfigurationError(
                f"Unknown output_types: {', '.join(unknown)} "
                f"(supported: {', '.join(sorted(REPORT_FORMATS))})",
                ("output_types",),
            )

        destinations = self.destinations
        if destinations and len(destinations) < self.parallel_testrun_count:
            raise ConfigurationError(
                f"parallel_testrun_count ({self.parallel_testrun_count}) "
                f"exceeds the number of destinations ({len(destinations)})",
                ("parallel_testrun_count", "destination"),
            )

        if self.result_policy not in RESULT_POLICIES:
            raise ConfigurationError(
                f"Unknown result_policy: {self.result_policy} "
                f"(supported: {', '.join(RESULT_POLICIES)})",
                ("result_policy",),
            )

        timeout = self._data.get("testrun_timeout")
        if timeout is not None and (
            not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise ConfigurationError(
                f"testrun_timeout must be a positive number, got {timeout!r}",
                ("testrun_timeout",),
            )

        if testrun_started is not None:
            validate_hook(testrun_started)


def validate_hook(hook: Callable[..., Any]) -> None:
    """Ensure *hook* is callable with zero or one positional argument.

    Raises:
        ConfigurationError: If *hook* has the wrong type or arity.
    """
    if not callable(hook):
        raise ConfigurationError(
            f"testrun_started must be callable, got {type(hook).__name__}",
            ("testrun_started",),
        )
    try:
        sig = inspect.signature(hook)
    except (TypeError, ValueError):
        return  # builtins without introspectable signatures

    required = [
        p for p in sig.parameters.values()
        if p.default is inspect.Parameter.empty
        and p.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.KEYWORD_ONLY,
        )
    ]
    if len(required) > 1 or any(
        p.kind == inspect.Parameter.KEYWORD_ONLY for p in required
    ):
        raise ConfigurationError(
            "testrun_started must accept no arguments or a single "
            f"argument, got signature {sig}",
            ("testrun_started",),
        )


def hook_arity(hook: Callable[..., Any]) -> int:
    """Return 0 if *hook* takes no argument, else 1."""
    try:
        sig = inspect.signature(hook)
    except (TypeError, ValueError):
        return 1
    for p in sig.parameters.values():
        if p.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.VAR_POSITIONAL,
        ):
            return 1
    return 0
