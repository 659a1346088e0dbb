"""Test execution: parallel lane scheduling and command-line executors."""

from multiscan.execution.executor import CommandBuilder, CommandTestExecutor
from multiscan.execution.lanes import ExecutionTarget, LaneOutcome, LaneRun, LaneScheduler, partition

__all__ = [
    "CommandBuilder",
    "CommandTestExecutor",
    "ExecutionTarget",
    "LaneOutcome",
    "LaneRun",
    "LaneScheduler",
    "partition",
]
