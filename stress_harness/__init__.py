"""
Stress Harness
==============
Multi-threaded HTTP load generation and measurement: weighted scenarios,
retrying client, thread-safe metrics and graded reports.
"""

__version__ = "1.0.0"

from .client import RequestOutcome, RequestSpec, RetryingHttpClient, backoff_delay
from .config import (
    PROFILES,
    RetryPolicy,
    RunConfig,
    ScenarioDefinition,
    ThinkTime,
    build_profile,
    load_run_config,
)
from .exceptions import ConfigurationError, StressHarnessError, TargetUnavailableError
from .harness import LoadTestHarness, run_load_test
from .metrics import AggregateStats, MetricsAggregator, percentile
from .report import GradingThresholds, Report, ReportFormat, ReportGenerator
from .selector import ScenarioSelector
from .worker import StopSignal, VirtualUser

__all__ = [
    "AggregateStats",
    "ConfigurationError",
    "GradingThresholds",
    "LoadTestHarness",
    "MetricsAggregator",
    "PROFILES",
    "Report",
    "ReportFormat",
    "ReportGenerator",
    "RequestOutcome",
    "RequestSpec",
    "RetryPolicy",
    "RetryingHttpClient",
    "RunConfig",
    "ScenarioDefinition",
    "ScenarioSelector",
    "StopSignal",
    "StressHarnessError",
    "TargetUnavailableError",
    "ThinkTime",
    "VirtualUser",
    "backoff_delay",
    "build_profile",
    "load_run_config",
    "percentile",
    "run_load_test",
]
