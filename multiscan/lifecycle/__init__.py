"""Run lifecycle: configuration, build preparation, retry planning, and environment reset."""

from multiscan.lifecycle.config import DEFAULT_CONFIG, RunConfig
from multiscan.lifecycle.environment import EnvironmentReset
from multiscan.lifecycle.preparer import ConfigPreparer
from multiscan.lifecycle.retry import RetryPlan, plan

__all__ = [
    "ConfigPreparer",
    "DEFAULT_CONFIG",
    "EnvironmentReset",
    "RetryPlan",
    "RunConfig",
    "plan",
]
