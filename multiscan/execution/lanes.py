"""Parallel lane scheduling for one attempt.

An attempt's test plan is split into contiguous slices, and each slice runs
on a lane bound to an exclusive execution target. Targets live in a pool
sized by lane_count, so at most lane_count slices run at once and no two
running slices share a target. With lane_count == 1 the same algorithm
runs a single slice.

Lanes run the test executor in a thread pool, the same way the async test
executor avoids asyncio subprocess child watchers. A lane that crashes or
times out yields a failed LaneOutcome; sibling lanes are unaffected. A
timed-out lane is cancelled through LaneRun.cancelled, and its target only
returns to the pool once the worker thread has actually finished.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Sequence

from multiscan.analysis.aggregator import ALL_TESTS
from multiscan.lifecycle.config import hook_arity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionTarget:
    """A device or simulator identity a lane runs against."""

    index: int
    destination: str | None = None


@dataclass(frozen=True)
class LaneAssignment:
    """A slice of the attempt's test plan bound to a lane and its target.

    ``target`` is None until the lane acquires a target from the pool.
    """

    lane_index: int
    tests: tuple[str, ...] | str  # identifiers, or ALL_TESTS
    target: ExecutionTarget | None = None


@dataclass(frozen=True)
class LaneRun:
    """Everything a test executor needs to run one lane."""

    attempt_index: int
    lane_index: int
    tests: tuple[str, ...] | str
    target: ExecutionTarget
    output_directory: Path
    options: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    # set when the lane must stop; executors poll it
    cancelled: threading.Event = field(
        default_factory=threading.Event, compare=False, repr=False
    )


@dataclass
class LaneOutcome:
    """Completion record of a single lane."""

    lane_index: int
    target: ExecutionTarget | None
    output_directory: Path
    succeeded: bool
    duration: float = 0.0
    error: str = ""
    timed_out: bool = False


# Test executor: LaneRun -> bool, or a handle with .result(timeout)
TestExecutor = Callable[[LaneRun], Any]


def partition(
    tests: Sequence[str] | str, slice_count: int
) -> list[tuple[str, ...] | str]:
    """Split *tests* into at most *slice_count* contiguous slices.

    The split is deterministic and order-preserving: concatenating the
    slices gives back *tests*. Earlier slices take the remainder, and no
    slice is empty. ALL_TESTS cannot be split and stays a single slice.

    Raises:
        ValueError: If slice_count is less than 1.
    """
    if slice_count < 1:
        raise ValueError(f"slice_count must be >= 1, got {slice_count}")
    if isinstance(tests, str):
        return [tests]

    items = tuple(tests)
    if not items:
        return []
    count = min(slice_count, len(items))
    size, extra = divmod(len(items), count)

    slices: list[tuple[str, ...] | str] = []
    start = 0
    for i in range(count):
        end = start + size + (1 if i < extra else 0)
        slices.append(items[start:end])
        start = end
    return slices


def lane_targets(destinations: Sequence[str], lane_count: int) -> list[ExecutionTarget]:
    """Build one exclusive target per lane.

    With destinations configured, lane *i* gets destination *i*; callers
    validate beforehand that there are enough of them.
    """
    targets: list[ExecutionTarget] = []
    for i in range(lane_count):
        destination = destinations[i] if i < len(destinations) else None
        targets.append(ExecutionTarget(index=i, destination=destination))
    return targets


def attempt_directory(output_directory: Path, attempt_index: int) -> Path:
    """Base directory holding every lane's artifacts for one attempt."""
    return output_directory / f"attempt-{attempt_index}"


class LaneScheduler:
    """Runs one attempt's test plan across parallel lanes."""

    def __init__(
        self,
        executor: TestExecutor,
        targets: Sequence[ExecutionTarget],
        output_directory: Path,
        batch_count: int | None = None,
        options: dict[str, Any] | None = None,
        timeout: float | None = None,
        testrun_started: Callable[..., Any] | None = None,
    ) -> None:
        if not targets:
            raise ValueError("LaneScheduler needs at least one target")
        self.executor = executor
        self.targets = list(targets)
        self.output_directory = output_directory
        self.batch_count = batch_count
        self.options = dict(options or {})
        self.timeout = timeout
        self.testrun_started = testrun_started

    @property
    def lane_count(self) -> int:
        return len(self.targets)

    def assign(self, tests: Sequence[str] | str) -> list[LaneAssignment]:
        """Partition *tests* into lane assignments."""
        slice_count = self.batch_count or self.lane_count
        return [
            LaneAssignment(lane_index=i, tests=chunk)
            for i, chunk in enumerate(partition(tests, slice_count))
        ]

    def execute(
        self, attempt_index: int, tests: Sequence[str] | str = ALL_TESTS
    ) -> list[LaneOutcome]:
        """Run every lane of one attempt and wait for all of them.

        Every worker thread has returned by the time this returns, so no
        lane of this attempt can still be writing artifacts.

        Returns:
            LaneOutcome per lane, ordered by lane index.
        """
        assignments = self.assign(tests)
        if not assignments:
            return []
        with ThreadPoolExecutor(
            max_workers=self.lane_count, thread_name_prefix="multiscan-lane"
        ) as workers:
            return asyncio.run(
                self._execute_async(attempt_index, assignments, workers)
            )

    async def _execute_async(
        self,
        attempt_index: int,
        assignments: list[LaneAssignment],
        workers: ThreadPoolExecutor,
    ) -> list[LaneOutcome]:
        pool: asyncio.Queue[ExecutionTarget] = asyncio.Queue()
        for target in self.targets:
            pool.put_nowait(target)

        base = attempt_directory(self.output_directory, attempt_index)

        async def run_lane(assignment: LaneAssignment) -> LaneOutcome:
            assignment = replace(assignment, target=await pool.get())
            try:
                lane_run = LaneRun(
                    attempt_index=attempt_index,
                    lane_index=assignment.lane_index,
                    tests=assignment.tests,
                    target=assignment.target,
                    output_directory=base / f"lane-{assignment.lane_index}",
                    options=dict(self.options),
                    timeout=self.timeout,
                )
                return await self._run_lane(lane_run, workers)
            finally:
                pool.put_nowait(assignment.target)

        outcomes = await asyncio.gather(
            *(run_lane(a) for a in assignments)
        )
        return sorted(outcomes, key=lambda o: o.lane_index)

    async def _run_lane(
        self, lane_run: LaneRun, workers: ThreadPoolExecutor
    ) -> LaneOutcome:
        """Run one lane, converting crashes and timeouts into a failed outcome.

        On timeout the lane is cancelled and still awaited: its target stays
        out of the pool until the worker thread returns.
        """
        loop = asyncio.get_running_loop()
        start_time = time.monotonic()
        future = loop.run_in_executor(workers, self._run_lane_sync, lane_run)
        error = ""
        timed_out = False
        try:
            succeeded = await asyncio.wait_for(
                asyncio.shield(future), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            succeeded = False
            timed_out = True
            error = f"Lane timed out after {self.timeout} seconds"
            lane_run.cancelled.set()
            try:
                await future
            except Exception as e:  # noqa: BLE001 - the lane already failed
                logger.debug("Cancelled lane %d raised: %s", lane_run.lane_index, e)
        except Exception as e:  # noqa: BLE001 - recorded as a failed lane
            succeeded = False
            error = f"Lane execution failed: {e}"

        duration = time.monotonic() - start_time
        if error:
            logger.warning(
                "Attempt %d lane %d: %s",
                lane_run.attempt_index, lane_run.lane_index, error,
            )
        return LaneOutcome(
            lane_index=lane_run.lane_index,
            target=lane_run.target,
            output_directory=lane_run.output_directory,
            succeeded=bool(succeeded),
            duration=duration,
            error=error,
            timed_out=timed_out,
        )

    def _run_lane_sync(self, lane_run: LaneRun) -> bool:
        """Run one lane on a worker thread (called from the thread pool)."""
        lane_run.output_directory.mkdir(parents=True, exist_ok=True)
        if self.testrun_started is not None:
            if hook_arity(self.testrun_started) == 0:
                self.testrun_started()
            else:
                self.testrun_started(lane_run)
        if lane_run.cancelled.is_set():
            return False

        outcome = self.executor(lane_run)
        result = getattr(outcome, "result", None)
        if callable(result):
            # Asynchronous handle: wait for the executor to finish
            outcome = result(lane_run.timeout)
        return bool(outcome)
