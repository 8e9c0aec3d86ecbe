"""
Load-test orchestration
=======================
Validates the RunConfig, spawns one OS thread per virtual user (each with its
own event loop and aiohttp session), enforces the shared stop signal, joins
the workers within a bounded grace period, then finalizes metrics and renders
the report.
"""

import asyncio
import logging
import random
import threading
import time
from typing import Callable, List, Optional

from .client import (
    AttemptContext,
    RequestSpec,
    RetryingHttpClient,
    client_timeout,
    create_session,
    http_transport,
    is_success_status,
)
from .config import RunConfig
from .exceptions import NetworkError, TargetUnavailableError
from .metrics import AggregateStats, MetricsAggregator, MetricsSnapshot, WorkerShard
from .report import GradingThresholds, Report, ReportGenerator
from .selector import ScenarioSelector
from .worker import StopSignal, VirtualUser, WorkerSummary

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 0.25

ProgressCallback = Callable[[MetricsSnapshot], None]


class LoadTestHarness:
    """Owns one run: config, workers, stop signal, aggregator and report."""

    def __init__(
        self,
        config: RunConfig,
        thresholds: Optional[GradingThresholds] = None,
        test_name: str = "Load Test",
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.config = config
        self.report_generator = ReportGenerator(thresholds)
        self.test_name = test_name
        self.progress_callback = progress_callback
        self.aggregator: Optional[MetricsAggregator] = None
        self.stats: Optional[AggregateStats] = None
        self.summaries: List[WorkerSummary] = []
        self._stop_signal: Optional[StopSignal] = None
        self._stop_requested = False

    def stop(self):
        """Ask all workers to finish; safe to call from any thread."""
        self._stop_requested = True
        if self._stop_signal is not None:
            self._stop_signal.stop()

    def run(self) -> Report:
        config = self.config.validate()
        selector = ScenarioSelector(config.scenarios)

        if config.health_check_path:
            self._preflight(config)

        aggregator = self.aggregator = MetricsAggregator(s.name for s in config.scenarios)
        stop = self._stop_signal = StopSignal.for_config(config)
        if self._stop_requested:
            stop.stop()

        summaries: List[Optional[WorkerSummary]] = [None] * config.concurrency
        threads = []
        for worker_id in range(config.concurrency):
            shard = aggregator.shard(worker_id)
            threads.append(threading.Thread(
                target=self._worker_main,
                args=(worker_id, selector, shard, stop, summaries),
                name=f"virtual-user-{worker_id}",
                daemon=True,
            ))

        logger.info(
            "Starting %d virtual users against %s (duration=%s, max_requests_per_worker=%s)",
            config.concurrency, config.base_url, config.duration, config.max_requests_per_worker,
        )
        for thread in threads:
            thread.start()

        self._join(threads, stop, aggregator)
        elapsed = time.monotonic() - stop.started_at

        self.summaries = [
            summary if summary is not None else WorkerSummary(worker_id=i, error="did not finish")
            for i, summary in enumerate(summaries)
        ]
        stats = self.stats = aggregator.finalize(elapsed)
        logger.info(
            "Run finished in %.2fs: %d requests, %d failed",
            elapsed, stats.total_requests, stats.failure_count,
        )
        return self.report_generator.render(stats, config, test_name=self.test_name)

    def _worker_main(
        self,
        worker_id: int,
        selector: ScenarioSelector,
        shard: WorkerShard,
        stop: StopSignal,
        summaries: List[Optional[WorkerSummary]],
    ):
        try:
            summaries[worker_id] = asyncio.run(self._run_user(worker_id, selector, shard, stop))
        except Exception as e:
            logger.exception("Virtual user %d crashed", worker_id)
            summaries[worker_id] = WorkerSummary(worker_id=worker_id, error=f"{type(e).__name__}: {e}")

    async def _run_user(
        self,
        worker_id: int,
        selector: ScenarioSelector,
        shard: WorkerShard,
        stop: StopSignal,
    ) -> WorkerSummary:
        rng = random.Random()
        async with create_session(self.config) as session:
            client = RetryingHttpClient.for_config(session, self.config, rng=rng)
            user = VirtualUser(worker_id, self.config, selector, client, shard, rng=rng)
            return await user.run(stop)

    def _join(self, threads: List[threading.Thread], stop: StopSignal, aggregator: MetricsAggregator):
        """Barrier join, bounded by shutdown_grace once the stop signal has fired."""
        grace = self.config.shutdown_grace
        while True:
            alive = [thread for thread in threads if thread.is_alive()]
            if not alive:
                return

            stopped_at = stop.stopped_at
            if stopped_at is not None and time.monotonic() > stopped_at + grace:
                stop.stop()
                logger.warning(
                    "%d virtual users still running %.1fs after stop; not waiting for them",
                    len(alive), grace,
                )
                return

            if self.progress_callback is not None:
                self.progress_callback(aggregator.snapshot())

            try:
                alive[0].join(timeout=PROGRESS_INTERVAL)
            except KeyboardInterrupt:
                logger.warning("Interrupted; stopping virtual users")
                stop.stop()

    def _preflight(self, config: RunConfig):
        url = config.url_for(config.health_check_path)
        try:
            status = asyncio.run(self._probe(config, url))
        except NetworkError as e:
            raise TargetUnavailableError(f"Target is not reachable at {url}: {e.reason}") from e
        if not is_success_status(status):
            raise TargetUnavailableError(f"Health check {url} answered HTTP {status}")
        logger.info("Health check %s passed (HTTP %d)", url, status)

    @staticmethod
    async def _probe(config: RunConfig, url: str) -> int:
        send = http_transport(client_timeout(config), verify_ssl=config.verify_ssl)
        async with create_session(config) as session:
            result = await send(
                session,
                RequestSpec(scenario_name="health-check", method="GET", url=url),
                AttemptContext(attempt=1, started_at=time.monotonic()),
            )
        return result.status_code


def run_load_test(
    config: RunConfig,
    thresholds: Optional[GradingThresholds] = None,
    test_name: str = "Load Test",
    progress_callback: Optional[ProgressCallback] = None,
) -> Report:
    """Run a complete load test and return its report."""
    harness = LoadTestHarness(
        config,
        thresholds=thresholds,
        test_name=test_name,
        progress_callback=progress_callback,
    )
    return harness.run()
