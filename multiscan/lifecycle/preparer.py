"""Build-for-testing preparation.

Resolves whether the run builds the test target or reuses an existing
build, and builds at most once per run regardless of try_count.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable

from multiscan.analysis.decoders import split_option_list
from multiscan.errors import BuildFailedError
from multiscan.lifecycle.config import RunConfig

logger = logging.getLogger(__name__)

# Builder: forwarded options -> success
Builder = Callable[[dict[str, Any]], bool]


class ConfigPreparer:
    """Prepares a run: builds when needed and clears build leftovers."""

    def __init__(self, config: RunConfig, builder: Builder | None = None) -> None:
        self.config = config
        self.builder = builder
        self.built = False

    @property
    def needs_build(self) -> bool:
        return not (
            self.config.test_without_building or self.config.skip_build
        )

    def prepare(self) -> dict[str, Any]:
        """Build if required and return the options for test executors.

        Raises:
            BuildFailedError: If the builder reports failure.
        """
        options = self.config.forwarded_options()
        if self.needs_build and not self.built:
            self.build_for_testing(options)
        options["test_without_building"] = True
        return options

    def build_for_testing(self, options: dict[str, Any]) -> None:
        """Invoke the builder once and drop the reports it wrote."""
        if self.builder is None:
            logger.info("No builder configured; assuming the target is built")
            self.built = True
            return

        logger.info("Building for testing")
        if not self.builder(dict(options)):
            raise BuildFailedError("Build for testing failed")
        self.built = True
        self.remove_build_report_files()

    def remove_build_report_files(self) -> list[str]:
        """Remove report files the build step wrote into the output directory.

        Returns:
            Paths that were removed.
        """
        removed: list[str] = []
        directory = self.config.output_directory
        for filename in split_option_list(self.config.config.get("output_files")):
            path = os.path.join(directory, filename)
            if not os.path.isfile(path):
                continue
            try:
                os.remove(path)
            except OSError as e:
                logger.warning("Could not remove build report %s: %s", path, e)
                continue
            removed.append(path)
        return removed
