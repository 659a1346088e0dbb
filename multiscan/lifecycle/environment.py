"""Simulator environment reset between attempts.

A stale simulator process or leftover simulator logs can corrupt the next
attempt's reports, so the orchestrator resets the environment after an
attempt and before its retry. Every step is best-effort: failures are
logged and never raised.
"""

from __future__ import annotations

import glob
import logging
import os
import subprocess
from typing import Callable, Sequence

logger = logging.getLogger(__name__)


class EnvironmentReset:
    """Quits simulator processes and removes stale simulator logs."""

    def __init__(
        self,
        quit_simulators: bool = True,
        quit_command: Sequence[str] = (),
        log_globs: Sequence[str] = (),
        timeout: float = 60.0,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.quit_simulators = quit_simulators
        self.quit_command = list(quit_command)
        self.log_globs = list(log_globs)
        self.timeout = timeout
        self._run = run

    def reset(self) -> None:
        """Run every reset step, logging rather than raising on failure."""
        if self.quit_simulators:
            self.quit_simulator_processes()
        self.remove_stale_logs()

    def quit_simulator_processes(self) -> bool:
        """Force quit simulator processes.

        Returns:
            True if the quit command ran and exited 0.
        """
        if not self.quit_command:
            return False
        try:
            proc = self._run(
                self.quit_command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Quitting simulators timed out after %s seconds", self.timeout
            )
            return False
        except OSError as e:
            logger.warning("Could not quit simulators: %s", e)
            return False

        if proc.returncode != 0:
            # killall exits 1 when nothing matched; nothing to quit
            logger.debug(
                "Quit command exited %d: %s",
                proc.returncode,
                (proc.stderr or "").strip(),
            )
            return False
        return True

    def remove_stale_logs(self) -> list[str]:
        """Delete simulator log files left by earlier attempts.

        Returns:
            Paths that were removed.
        """
        removed: list[str] = []
        for pattern in self.log_globs:
            for path in glob.glob(os.path.expanduser(pattern)):
                try:
                    os.remove(path)
                except OSError as e:
                    logger.warning("Could not remove simulator log %s: %s", path, e)
                    continue
                removed.append(path)
        if removed:
            logger.info("Removed %d stale simulator log(s)", len(removed))
        return removed
