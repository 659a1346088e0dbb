"""Unit tests for the parallel lane scheduler."""

from __future__ import annotations

import concurrent.futures
import tempfile
import threading
import time
from pathlib import Path

import pytest

from multiscan.analysis.aggregator import ALL_TESTS
from multiscan.execution.lanes import (
    ExecutionTarget,
    LaneRun,
    LaneScheduler,
    attempt_directory,
    lane_targets,
    partition,
)

TESTS = tuple(f"Suite/Case/test{i}" for i in range(10))


class TestPartition:
    """Tests for the deterministic contiguous partition."""

    def test_concatenation_preserves_order(self):
        """Slices concatenate back to the original sequence."""
        slices = partition(TESTS, 4)
        assert len(slices) == 4
        assert tuple(t for s in slices for t in s) == TESTS

    def test_remainder_goes_to_earlier_slices(self):
        """Earlier slices take the extra items."""
        assert [len(s) for s in partition(TESTS, 4)] == [3, 3, 2, 2]

    def test_deterministic(self):
        """Same input gives the same partition."""
        assert partition(TESTS, 3) == partition(TESTS, 3)

    def test_more_slices_than_tests(self):
        """No empty slices are produced."""
        assert partition(("a", "b"), 4) == [("a",), ("b",)]

    def test_single_slice(self):
        """One slice holds everything."""
        assert partition(TESTS, 1) == [TESTS]

    def test_all_tests_not_split(self):
        """ALL_TESTS stays one slice."""
        assert partition(ALL_TESTS, 4) == [ALL_TESTS]

    def test_empty(self):
        """An empty plan has no slices."""
        assert partition((), 3) == []

    def test_invalid_slice_count(self):
        """slice_count below 1 raises ValueError."""
        with pytest.raises(ValueError):
            partition(TESTS, 0)


class TestLaneTargets:
    """Tests for per-lane target construction."""

    def test_destinations_bound_per_lane(self):
        """Lane i gets destination i."""
        targets = lane_targets(["d0", "d1", "d2"], 2)
        assert targets == [
            ExecutionTarget(index=0, destination="d0"),
            ExecutionTarget(index=1, destination="d1"),
        ]

    def test_anonymous_targets(self):
        """Without destinations targets are distinguished by index."""
        targets = lane_targets([], 3)
        assert [t.index for t in targets] == [0, 1, 2]
        assert all(t.destination is None for t in targets)


class RecordingExecutor:
    """Test executor that records lane runs and returns a fixed outcome."""

    def __init__(self, outcome=True, delay: float = 0.0, fail_lanes=(), stubborn=None):
        self.outcome = outcome
        self.delay = delay
        self.fail_lanes = set(fail_lanes)
        # (attempt, lane) -> seconds slept regardless of cancellation
        self.stubborn = dict(stubborn or {})
        self.finished: list[tuple[int, int]] = []
        self.runs: list[LaneRun] = []
        self.active_targets: set[int] = set()
        self.overlap = False
        self.max_concurrent = 0
        self._lock = threading.Lock()

    def __call__(self, lane_run: LaneRun):
        with self._lock:
            if lane_run.target.index in self.active_targets:
                self.overlap = True
            self.active_targets.add(lane_run.target.index)
            self.max_concurrent = max(self.max_concurrent, len(self.active_targets))
            self.runs.append(lane_run)
        try:
            key = (lane_run.attempt_index, lane_run.lane_index)
            if key in self.stubborn:
                time.sleep(self.stubborn[key])
            elif self.delay:
                lane_run.cancelled.wait(self.delay)
            if lane_run.lane_index in self.fail_lanes:
                raise RuntimeError("simulator crashed")
            return self.outcome
        finally:
            with self._lock:
                self.active_targets.discard(lane_run.target.index)
                self.finished.append((lane_run.attempt_index, lane_run.lane_index))


class TestLaneScheduler:
    """Tests for running an attempt across lanes."""

    def test_single_lane(self):
        """lane_count=1 runs one lane with the whole plan."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(executor, lane_targets([], 1), Path(tmpdir))
            outcomes = scheduler.execute(1, TESTS)

            assert len(outcomes) == 1
            assert outcomes[0].succeeded is True
            assert executor.runs[0].tests == TESTS

    def test_lanes_get_disjoint_slices(self):
        """Each lane runs a disjoint contiguous slice."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(executor, lane_targets([], 4), Path(tmpdir))
            outcomes = scheduler.execute(1, TESTS)

            assert [o.lane_index for o in outcomes] == [0, 1, 2, 3]
            runs = sorted(executor.runs, key=lambda r: r.lane_index)
            assert tuple(t for r in runs for t in r.tests) == TESTS

    def test_lane_output_directories_distinct(self):
        """Every lane writes under its own directory of the attempt."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(executor, lane_targets([], 3), Path(tmpdir))
            outcomes = scheduler.execute(2, TESTS)

            dirs = {o.output_directory for o in outcomes}
            assert len(dirs) == 3
            base = attempt_directory(Path(tmpdir), 2)
            assert all(d.parent == base and d.is_dir() for d in dirs)

    def test_crashed_lane_does_not_abort_siblings(self):
        """A lane raising is recorded as failed; others still succeed."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(fail_lanes={1})
            scheduler = LaneScheduler(executor, lane_targets([], 3), Path(tmpdir))
            outcomes = scheduler.execute(1, TESTS)

            assert [o.succeeded for o in outcomes] == [True, False, True]
            assert "simulator crashed" in outcomes[1].error

    def test_timeout_marks_lane_failed(self):
        """A lane exceeding the timeout fails and is cancelled."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(delay=5.0)
            scheduler = LaneScheduler(
                executor, lane_targets([], 1), Path(tmpdir), timeout=0.1
            )
            start = time.monotonic()
            outcomes = scheduler.execute(1, TESTS)

            assert outcomes[0].succeeded is False
            assert outcomes[0].timed_out is True
            assert "timed out" in outcomes[0].error
            assert executor.runs[0].cancelled.is_set()
            assert time.monotonic() - start < 4.0

    def test_batches_share_targets_exclusively(self):
        """More batches than lanes never run two batches on one target."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(delay=0.05)
            scheduler = LaneScheduler(
                executor, lane_targets([], 2), Path(tmpdir), batch_count=5
            )
            outcomes = scheduler.execute(1, TESTS)

            assert len(outcomes) == 5
            assert executor.overlap is False
            assert executor.max_concurrent <= 2

    def test_false_outcome(self):
        """An executor returning False marks the lane failed."""
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler = LaneScheduler(
                RecordingExecutor(outcome=False), lane_targets([], 1), Path(tmpdir)
            )
            assert scheduler.execute(1, TESTS)[0].succeeded is False

    def test_future_handle_outcome(self):
        """Executors may return a handle queried later for the outcome."""
        with tempfile.TemporaryDirectory() as tmpdir:

            def executor(lane_run):
                future = concurrent.futures.Future()
                future.set_result(True)
                return future

            scheduler = LaneScheduler(executor, lane_targets([], 2), Path(tmpdir))
            assert all(o.succeeded for o in scheduler.execute(1, TESTS))

    def test_empty_plan_runs_nothing(self):
        """An empty test subset schedules no lanes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(executor, lane_targets([], 2), Path(tmpdir))
            assert scheduler.execute(1, ()) == []
            assert executor.runs == []

    def test_options_and_timeout_forwarded(self):
        """Lane runs carry the scheduler options and timeout."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(
                executor,
                lane_targets(["dest"], 1),
                Path(tmpdir),
                options={"scheme": "AtomicBoy"},
                timeout=30.0,
            )
            scheduler.execute(1, ALL_TESTS)
            run = executor.runs[0]
            assert run.options == {"scheme": "AtomicBoy"}
            assert run.timeout == 30.0
            assert run.target.destination == "dest"
            assert run.tests == ALL_TESTS

    def test_no_targets_rejected(self):
        """A scheduler needs at least one target."""
        with pytest.raises(ValueError):
            LaneScheduler(RecordingExecutor(), [], Path("out"))


class TestTestrunStartedHook:
    """Tests for the hook called before each lane runs."""

    def test_single_argument_hook_gets_lane_run(self):
        """A one-argument hook receives the LaneRun on the lane thread."""
        seen = []
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(
                executor,
                lane_targets([], 2),
                Path(tmpdir),
                testrun_started=lambda lane_run: seen.append(
                    (lane_run.lane_index, threading.current_thread().name)
                ),
            )
            scheduler.execute(1, TESTS)

        assert sorted(i for i, _ in seen) == [0, 1]
        assert all(name.startswith("multiscan-lane") for _, name in seen)

    def test_no_argument_hook(self):
        """A no-argument hook is called once per lane."""
        calls = []
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler = LaneScheduler(
                RecordingExecutor(),
                lane_targets([], 3),
                Path(tmpdir),
                testrun_started=lambda: calls.append(1),
            )
            scheduler.execute(1, TESTS)
        assert len(calls) == 3

    def test_hook_failure_fails_lane(self):
        """A raising hook fails only its lane."""

        def hook(lane_run):
            if lane_run.lane_index == 0:
                raise RuntimeError("hook failed")

        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(
                executor, lane_targets([], 2), Path(tmpdir), testrun_started=hook
            )
            outcomes = scheduler.execute(1, TESTS)

        assert [o.succeeded for o in outcomes] == [False, True]


class TestTimedOutLaneOwnership:
    """A timed-out lane keeps its target until its worker returns."""

    def test_execute_waits_for_stubborn_lane(self):
        """execute() returns only after a lane ignoring cancellation finishes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(stubborn={(1, 0): 0.6})
            scheduler = LaneScheduler(
                executor, lane_targets([], 2), Path(tmpdir), timeout=0.1
            )
            outcomes = scheduler.execute(1, TESTS)

        assert (1, 0) in executor.finished
        assert outcomes[0].timed_out is True
        assert outcomes[1].succeeded is True

    def test_next_attempt_never_shares_target(self):
        """A retry cannot start on a target the previous attempt still uses."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(stubborn={(1, 0): 0.6})
            scheduler = LaneScheduler(
                executor, lane_targets([], 2), Path(tmpdir), timeout=0.1
            )
            scheduler.execute(1, TESTS)
            scheduler.execute(2, TESTS[:2])

        assert executor.overlap is False
        assert executor.finished.index((1, 0)) < executor.finished.index((2, 0))

    def test_batch_waits_for_timed_out_target(self):
        """A queued batch does not take a target whose lane is still running."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor(stubborn={(1, 0): 0.6})
            scheduler = LaneScheduler(
                executor, lane_targets([], 2), Path(tmpdir),
                batch_count=4, timeout=0.1,
            )
            outcomes = scheduler.execute(1, TESTS)

        assert len(outcomes) == 4
        assert executor.overlap is False
        assert executor.max_concurrent <= 2

    def test_assignment_bound_to_target(self):
        """Each lane run carries the target its assignment acquired."""
        with tempfile.TemporaryDirectory() as tmpdir:
            executor = RecordingExecutor()
            scheduler = LaneScheduler(
                executor, lane_targets(["d0", "d1"], 2), Path(tmpdir)
            )
            assert all(a.target is None for a in scheduler.assign(TESTS))
            scheduler.execute(1, TESTS)

        assert {r.target.destination for r in executor.runs} == {"d0", "d1"}
