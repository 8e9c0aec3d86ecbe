"""
Virtual users
=============
A VirtualUser is one simulated client session: strictly sequential
select -> execute -> record -> think, until the shared StopSignal fires.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .client import RequestOutcome, RequestSpec, RetryingHttpClient
from .config import PATH_PLACEHOLDERS, RunConfig, ScenarioDefinition
from .exceptions import ConfigurationError
from .metrics import AggregatorClosedError
from .selector import ScenarioSelector

logger = logging.getLogger(__name__)

# Longest single sleep slice, so an explicit stop() is noticed promptly
SLEEP_SLICE = 0.1


class Recorder(Protocol):
    def record(self, scenario_name: str, outcome: RequestOutcome) -> None:
        ...


class StopSignal:
    """
    The run's single stop condition, shared by reference across all workers:
    a deadline, a per-worker request cap, an explicit stop(), or any mix.
    The deadline is authoritative over every local sleep.
    """

    def __init__(
        self,
        duration: Optional[float] = None,
        max_requests_per_worker: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.started_at = clock()
        self.deadline = self.started_at + duration if duration is not None else None
        self.max_requests_per_worker = max_requests_per_worker
        self._event = threading.Event()
        self._stopped_at: Optional[float] = None

    @classmethod
    def for_config(cls, config: RunConfig) -> "StopSignal":
        return cls(duration=config.duration, max_requests_per_worker=config.max_requests_per_worker)

    def stop(self):
        if not self._event.is_set():
            self._stopped_at = self._clock()
            self._event.set()

    @property
    def stopped(self) -> bool:
        """True once stop() was called or the deadline has passed."""
        if self._event.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def stopped_at(self) -> Optional[float]:
        """Monotonic time at which the run was told to stop, if it has been."""
        if self._event.is_set():
            return self._stopped_at
        if self.deadline is not None and self._clock() >= self.deadline:
            return self.deadline
        return None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline; None when there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def reached(self, requests_issued: int) -> bool:
        if self.stopped:
            return True
        cap = self.max_requests_per_worker
        return cap is not None and requests_issued >= cap

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, clipped to the remaining budget and cut short
        by stop(). Returns True if the full duration elapsed.
        """
        end = self._clock() + seconds
        if self.deadline is not None and end > self.deadline:
            end = self.deadline
            clipped = True
        else:
            clipped = False
        while not self._event.is_set():
            left = end - self._clock()
            if left <= 0:
                return not clipped
            await asyncio.sleep(min(left, SLEEP_SLICE))
        return False


@dataclass
class WorkerSummary:
    """Per-worker diagnostics. The MetricsAggregator is the source of truth."""
    worker_id: int
    requests_issued: int = 0
    failures: int = 0
    retries: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None


class VirtualUser:
    """One independent, strictly sequential client session."""

    def __init__(
        self,
        worker_id: int,
        config: RunConfig,
        selector: ScenarioSelector,
        client: RetryingHttpClient,
        recorder: Recorder,
        rng: Optional[random.Random] = None,
    ):
        for scenario in selector.scenarios:
            unknown = set(scenario.placeholders()) - PATH_PLACEHOLDERS
            if unknown:
                raise ConfigurationError(
                    f"Scenario {scenario.name!r} uses unknown placeholders: {', '.join(sorted(unknown))}"
                )
        self.worker_id = worker_id
        self.config = config
        self.selector = selector
        self.client = client
        self.recorder = recorder
        self.rng = rng or random.Random()

    def build_request(self, scenario: ScenarioDefinition, iteration: int) -> RequestSpec:
        path = scenario.render_path(user_id=self.worker_id, iteration=iteration)
        return RequestSpec(
            scenario_name=scenario.name,
            method=scenario.method,
            url=self.config.url_for(path),
            headers=dict(scenario.headers),
            body=scenario.body,
        )

    def think_time(self) -> float:
        think = self.config.think_time
        if think.jitter > 0:
            return think.base + self.rng.uniform(0, think.jitter)
        return think.base

    async def run(self, stop: StopSignal) -> WorkerSummary:
        summary = WorkerSummary(worker_id=self.worker_id)
        started = time.monotonic()

        while not stop.reached(summary.requests_issued):
            scenario = self.selector.select(self.rng)
            spec = self.build_request(scenario, summary.requests_issued)
            outcome = await self.client.execute(spec, deadline=stop.deadline, sleep=stop.sleep)

            try:
                self.recorder.record(scenario.name, outcome)
            except AggregatorClosedError:
                logger.warning("Virtual user %d finished after metrics were finalized; outcome dropped", self.worker_id)
                break

            summary.requests_issued += 1
            summary.retries += outcome.retry_count
            if not outcome.success:
                summary.failures += 1

            if stop.reached(summary.requests_issued):
                break
            delay = self.think_time()
            if delay > 0:
                await stop.sleep(delay)

        summary.elapsed_seconds = time.monotonic() - started
        logger.debug(
            "Virtual user %d done: %d requests, %d failed, %d retries",
            self.worker_id, summary.requests_issued, summary.failures, summary.retries,
        )
        return summary
