"""
Tests for the retrying HTTP client.

HTTP-level behavior is exercised through aioresponses; retry classification
and deadline handling use plain async transports with an injected clock and
sleep so nothing waits on real backoff.
"""

import asyncio
import logging
import random
import time

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses

from stress_harness.client import (
    AttemptResult,
    RequestSpec,
    RetryingHttpClient,
    backoff_delay,
    compose,
    http_transport,
    timed,
    with_request_id,
)
from stress_harness.config import RetryPolicy
from stress_harness.exceptions import NetworkError, RequestTimeoutError
from stress_harness.worker import StopSignal

URL = "http://target.test/api/items"
SPEC = RequestSpec(scenario_name="items", method="GET", url=URL)


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class ScriptedTransport:
    """Replays a list of status codes or exceptions, one per attempt."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.seen = []

    async def __call__(self, session, spec, context):
        self.seen.append((spec, context))
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        return AttemptResult(status_code=step)


def fast_policy(**overrides):
    params = dict(max_retries=3, base_delay=0.01, max_delay=0.1, jitter_max=0.0)
    params.update(overrides)
    return RetryPolicy(**params)


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


def http_client(session, policy):
    transport = compose(http_transport(aiohttp.ClientTimeout(total=5)), timed, with_request_id)
    return RetryingHttpClient(session, policy, transport)


class TestRetryBehavior:
    @pytest.mark.asyncio
    async def test_503_twice_then_success(self, session):
        policy = fast_policy(base_delay=0.05, max_delay=1.0)
        with aioresponses() as m:
            m.get(URL, status=503)
            m.get(URL, status=503)
            m.get(URL, status=200, payload={"items": []})

            outcome = await http_client(session, policy).execute(SPEC)

        assert outcome.success
        assert outcome.status_code == 200
        assert outcome.retry_count == 2
        # 0.05s + 0.10s of backoff is part of the client-perceived latency
        assert outcome.latency_ms >= 145

    @pytest.mark.asyncio
    async def test_retries_exhausted_returns_last_status(self, session):
        with aioresponses() as m:
            m.get(URL, status=503, repeat=True)

            outcome = await http_client(session, fast_policy()).execute(SPEC)

        assert not outcome.success
        assert outcome.status_code == 503
        assert outcome.retry_count == 3
        assert outcome.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_non_retryable_status_is_terminal(self, session):
        with aioresponses() as m:
            m.get(URL, status=404)
            m.get(URL, status=200)

            outcome = await http_client(session, fast_policy()).execute(SPEC)

        assert not outcome.success
        assert outcome.status_code == 404
        assert outcome.retry_count == 0
        assert outcome.error_kind == "HTTP 404"

    @pytest.mark.asyncio
    async def test_redirect_range_counts_as_success(self):
        client = RetryingHttpClient(None, fast_policy(), ScriptedTransport(304))
        outcome = await client.execute(SPEC)
        assert outcome.success
        assert outcome.status_code == 304

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self, session):
        with aioresponses() as m:
            m.get(URL, exception=asyncio.TimeoutError())
            m.get(URL, status=200)

            outcome = await http_client(session, fast_policy()).execute(SPEC)

        assert outcome.success
        assert outcome.retry_count == 1

    @pytest.mark.asyncio
    async def test_persistent_timeout_reason(self, session):
        with aioresponses() as m:
            m.get(URL, exception=asyncio.TimeoutError(), repeat=True)

            outcome = await http_client(session, fast_policy(max_retries=1)).execute(SPEC)

        assert not outcome.success
        assert outcome.status_code is None
        assert outcome.error == "Timeout"
        assert outcome.retry_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_reason(self, session):
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("refused"), repeat=True)

            outcome = await http_client(session, fast_policy(max_retries=1)).execute(SPEC)

        assert not outcome.success
        assert outcome.error == "ConnectionError: ClientConnectionError"

    @pytest.mark.asyncio
    async def test_zero_retries_never_sleeps(self):
        sleep = FakeSleep()
        transport = ScriptedTransport(503)
        client = RetryingHttpClient(None, fast_policy(max_retries=0), transport, sleep=sleep)

        outcome = await client.execute(SPEC)

        assert not outcome.success
        assert outcome.retry_count == 0
        assert sleep.calls == []
        assert len(transport.seen) == 1

    @pytest.mark.asyncio
    async def test_custom_retryable_set(self):
        sleep = FakeSleep()
        policy = fast_policy(retryable_status_codes=frozenset({500}))
        client = RetryingHttpClient(None, policy, ScriptedTransport(500, 429), sleep=sleep)

        outcome = await client.execute(SPEC)

        assert not outcome.success
        assert outcome.status_code == 429
        assert outcome.retry_count == 1
        assert len(sleep.calls) == 1

    @pytest.mark.asyncio
    async def test_sleeps_follow_backoff_schedule(self):
        sleep = FakeSleep()
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, jitter_max=0.0)
        transport = ScriptedTransport(
            NetworkError("reset"), RequestTimeoutError("Timeout"), 502, 200,
        )
        client = RetryingHttpClient(None, policy, transport, sleep=sleep)

        outcome = await client.execute(SPEC)

        assert outcome.success
        assert outcome.retry_count == 3
        assert sleep.calls == [1.0, 2.0, 4.0]
        assert [context.attempt for _, context in transport.seen] == [1, 2, 3, 4]


class TestStopDuringBackoff:
    @pytest.mark.asyncio
    async def test_interrupted_sleep_returns_last_attempt(self):
        async def interrupted(seconds):
            return False

        transport = ScriptedTransport(503, 200)
        client = RetryingHttpClient(None, fast_policy(), transport)

        outcome = await client.execute(SPEC, sleep=interrupted)

        assert not outcome.success
        assert outcome.status_code == 503
        assert outcome.error == "HTTP 503"
        assert outcome.retry_count == 0
        assert len(transport.seen) == 1

    @pytest.mark.asyncio
    async def test_stop_signal_cuts_backoff_short(self):
        stop = StopSignal()
        policy = RetryPolicy(max_retries=3, base_delay=5.0, max_delay=10.0, jitter_max=0.0)
        client = RetryingHttpClient(None, policy, ScriptedTransport(503, 200))
        asyncio.get_running_loop().call_later(0.1, stop.stop)

        started = time.monotonic()
        outcome = await client.execute(SPEC, deadline=stop.deadline, sleep=stop.sleep)

        assert time.monotonic() - started < 1.0
        assert not outcome.success
        assert outcome.retry_count == 0

    @pytest.mark.asyncio
    async def test_completed_sleep_keeps_retrying(self):
        async def completed(seconds):
            return True

        client = RetryingHttpClient(None, fast_policy(), ScriptedTransport(503, 200))
        outcome = await client.execute(SPEC, sleep=completed)
        assert outcome.success
        assert outcome.retry_count == 1


class TestAttemptDetails:
    @pytest.mark.asyncio
    async def test_response_size_and_attempt_latency_reach_outcome(self, session):
        with aioresponses() as m:
            m.get(URL, status=200, body="x" * 128)

            outcome = await http_client(session, fast_policy()).execute(SPEC)

        assert outcome.success
        assert outcome.response_size == 128
        assert outcome.attempt_latency_ms is not None
        assert 0 <= outcome.attempt_latency_ms <= outcome.latency_ms + 1.0

    @pytest.mark.asyncio
    async def test_failed_outcome_keeps_last_attempt_body(self, session):
        with aioresponses() as m:
            m.get(URL, status=503, body="busy")
            m.get(URL, status=500, body="internal error")

            outcome = await http_client(session, fast_policy()).execute(SPEC)

        assert outcome.status_code == 500
        assert outcome.response_size == len("internal error")

    @pytest.mark.asyncio
    async def test_network_error_has_no_attempt_details(self):
        client = RetryingHttpClient(None, fast_policy(max_retries=0), ScriptedTransport(NetworkError("reset")))
        outcome = await client.execute(SPEC)
        assert outcome.response_size == 0
        assert outcome.attempt_latency_ms is None

    @pytest.mark.asyncio
    async def test_attempt_latency_logged_on_retry(self, caplog):
        async def slow_503(session, spec, context):
            return AttemptResult(status_code=503, latency_ms=42.5)

        client = RetryingHttpClient(None, fast_policy(max_retries=1), slow_503, sleep=FakeSleep())
        with caplog.at_level(logging.DEBUG, logger="stress_harness.client"):
            await client.execute(SPEC)

        assert "attempt took 42.5ms" in caplog.text


class TestDeadline:
    @pytest.mark.asyncio
    async def test_backoff_past_deadline_is_skipped(self):
        now = [100.0]
        sleep = FakeSleep()
        policy = RetryPolicy(max_retries=3, base_delay=1.0, jitter_max=0.0)
        client = RetryingHttpClient(
            None, policy, ScriptedTransport(503, 200), clock=lambda: now[0], sleep=sleep,
        )

        outcome = await client.execute(SPEC, deadline=100.5)

        assert not outcome.success
        assert outcome.status_code == 503
        assert outcome.retry_count == 0
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_backoff_within_deadline_proceeds(self):
        now = [100.0]
        sleep = FakeSleep()
        policy = RetryPolicy(max_retries=3, base_delay=1.0, jitter_max=0.0)
        client = RetryingHttpClient(
            None, policy, ScriptedTransport(503, 200), clock=lambda: now[0], sleep=sleep,
        )

        outcome = await client.execute(SPEC, deadline=105.0)

        assert outcome.success
        assert sleep.calls == [1.0]


class TestBackoff:
    def test_non_decreasing_and_capped_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter_max=0.0)
        delays = [backoff_delay(attempt, policy) for attempt in range(1, 9)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0, 10.0, 10.0]
        assert delays == sorted(delays)

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter_max=1.0)
        rng = random.Random(7)
        for attempt in range(1, 8):
            base = policy.base_backoff(attempt)
            for _ in range(50):
                delay = backoff_delay(attempt, policy, rng)
                assert base <= delay <= policy.max_delay
                assert delay < base + 1.0 or delay == policy.max_delay

    def test_cap_applies_after_jitter(self):
        class AlmostOne:
            def random(self):
                return 0.999

        policy = RetryPolicy(base_delay=1.0, max_delay=4.5, jitter_max=1.0)
        assert backoff_delay(1, policy, AlmostOne()) == pytest.approx(1.999)
        assert backoff_delay(3, policy, AlmostOne()) == 4.5

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            backoff_delay(0, RetryPolicy())


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_request_id_and_attempt_headers(self):
        base = ScriptedTransport(503, 200)
        client = RetryingHttpClient(None, fast_policy(), compose(base, with_request_id), sleep=FakeSleep())

        await client.execute(SPEC)

        (first, _), (second, _) = base.seen
        assert first.headers["X-Attempt"] == "1"
        assert second.headers["X-Attempt"] == "2"
        assert first.headers["X-Request-ID"].startswith("stress-")
        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
        assert "X-Request-ID" not in SPEC.headers

    @pytest.mark.asyncio
    async def test_timed_fills_latency(self):
        async def slow(session, spec, context):
            await asyncio.sleep(0.02)
            return AttemptResult(status_code=200)

        result = await timed(slow)(None, SPEC, None)
        assert result.latency_ms >= 15

    @pytest.mark.asyncio
    async def test_compose_order(self):
        order = []

        def tag(name):
            def middleware(transport):
                async def send(session, spec, context):
                    order.append(name)
                    return await transport(session, spec, context)
                return send
            return middleware

        transport = compose(ScriptedTransport(200), tag("outer"), tag("inner"))
        await transport(None, SPEC, None)
        assert order == ["outer", "inner"]

    @pytest.mark.asyncio
    async def test_json_body_sent_for_post(self, session):
        spec = RequestSpec(scenario_name="create", method="POST", url=URL, body={"name": "widget"})
        with aioresponses() as m:
            m.post(URL, status=201)

            started = time.monotonic()
            outcome = await http_client(session, fast_policy()).execute(spec)

            assert outcome.success
            assert time.monotonic() - started < 1.0
            (key, calls), = m.requests.items()
            assert calls[0].kwargs["json"] == {"name": "widget"}
