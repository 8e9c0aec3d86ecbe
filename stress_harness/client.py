"""
Retrying HTTP client
====================
Executes one logical request against the target, retrying connection errors,
timeouts and retryable status codes with exponential backoff plus jitter.

The network call itself is a *transport*: an async callable
``(session, spec, context) -> AttemptResult``. Instrumentation such as timing
and request ids is layered on with middleware (``transport -> transport``)
instead of hooks that mutate shared request state.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp

from .config import BODY_METHODS, RetryPolicy, RunConfig
from .exceptions import HttpStatusError, NetworkError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestSpec:
    """A concrete request built from a scenario."""
    scenario_name: str
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Any] = None


@dataclass(frozen=True)
class AttemptContext:
    """Per-attempt state passed down the retry loop."""
    attempt: int
    started_at: float

    @property
    def retry_count(self) -> int:
        return self.attempt - 1


@dataclass(frozen=True)
class AttemptResult:
    """What a transport observed for a single attempt."""
    status_code: int
    response_size: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class RequestOutcome:
    """
    Result of one logical request. Retries collapse into a single outcome:
    latency runs from the first attempt's start to the final resolution,
    backoff sleeps included.
    """
    scenario_name: str
    success: bool
    latency_ms: float
    retry_count: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    # bytes and transport time of the final attempt
    response_size: int = 0
    attempt_latency_ms: Optional[float] = None

    @property
    def error_kind(self) -> Optional[str]:
        if self.success:
            return None
        return self.error or (f"HTTP {self.status_code}" if self.status_code else "Unknown")


Transport = Callable[[aiohttp.ClientSession, RequestSpec, AttemptContext], Awaitable[AttemptResult]]
Middleware = Callable[[Transport], Transport]


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 400


# =============================================================================
# TRANSPORTS AND MIDDLEWARE
# =============================================================================

def http_transport(timeout: aiohttp.ClientTimeout, verify_ssl: bool = True) -> Transport:
    """Base transport: one aiohttp request, bounded by the per-attempt timeout."""

    async def send(session: aiohttp.ClientSession, spec: RequestSpec, context: AttemptContext) -> AttemptResult:
        try:
            async with session.request(
                spec.method,
                spec.url,
                headers=dict(spec.headers),
                json=spec.body if spec.method in BODY_METHODS else None,
                timeout=timeout,
                ssl=verify_ssl,
            ) as response:
                body = await response.read()
                return AttemptResult(status_code=response.status, response_size=len(body))
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError("Timeout", e) from e
        except (aiohttp.ClientError, OSError) as e:
            raise NetworkError(str(e) or type(e).__name__, e) from e

    return send


def timed(transport: Transport) -> Transport:
    """Record wall-clock latency of each attempt on its AttemptResult."""

    async def send(session: aiohttp.ClientSession, spec: RequestSpec, context: AttemptContext) -> AttemptResult:
        start = time.perf_counter()
        result = await transport(session, spec, context)
        return replace(result, latency_ms=(time.perf_counter() - start) * 1000)

    return send


def with_request_id(transport: Transport) -> Transport:
    """Tag each attempt with a fresh X-Request-ID and its attempt number."""

    async def send(session: aiohttp.ClientSession, spec: RequestSpec, context: AttemptContext) -> AttemptResult:
        headers = {
            **spec.headers,
            "X-Request-ID": f"stress-{uuid.uuid4().hex[:16]}",
            "X-Attempt": str(context.attempt),
        }
        return await transport(session, replace(spec, headers=headers), context)

    return send


def compose(base: Transport, *middleware: Middleware) -> Transport:
    """Wrap ``base`` so that the first middleware listed is the outermost."""
    transport = base
    for wrap in reversed(middleware):
        transport = wrap(transport)
    return transport


def client_timeout(config: RunConfig) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=config.request_timeout, connect=config.connect_timeout)


def create_session(config: RunConfig, connection_limit: int = 1) -> aiohttp.ClientSession:
    """Session for one virtual user: a small keep-alive pool, like a single browser."""
    connector = aiohttp.TCPConnector(
        limit=connection_limit,
        limit_per_host=connection_limit,
        keepalive_timeout=30,
        enable_cleanup_closed=True,
    )
    return aiohttp.ClientSession(
        timeout=client_timeout(config),
        connector=connector,
        headers=dict(config.headers),
    )


# =============================================================================
# BACKOFF
# =============================================================================

def backoff_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """
    Delay before retry ``attempt`` (1-based):
    min(base_delay * 2^(attempt-1) + jitter, max_delay), jitter in [0, jitter_max).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    draw = (rng or random).random()
    return min(policy.base_delay * (2 ** (attempt - 1)) + draw * policy.jitter_max, policy.max_delay)


class RetryingHttpClient:
    """
    Executes logical requests with retry classification, backoff and jitter.

    Retryable: NetworkError, RequestTimeoutError and statuses in the policy's
    retryable set. Everything else outside [200, 400) is terminal. Backoff
    sleeps never run past ``deadline``: when the next delay would overshoot,
    the last attempt is returned as a failure immediately.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        policy: RetryPolicy,
        transport: Transport,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.policy = policy
        self.transport = transport
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def for_config(
        cls,
        session: aiohttp.ClientSession,
        config: RunConfig,
        rng: Optional[random.Random] = None,
    ) -> "RetryingHttpClient":
        transport = compose(
            http_transport(client_timeout(config), verify_ssl=config.verify_ssl),
            timed,
            with_request_id,
        )
        return cls(session, config.retry_policy, transport, rng=rng)

    async def execute(
        self,
        spec: RequestSpec,
        deadline: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> RequestOutcome:
        """
        Run ``spec`` to a single outcome. ``sleep`` overrides the backoff sleep
        for this call; if it returns False the wait was cut short (the run was
        stopped) and the last attempt is returned as a failure.
        """
        sleep = sleep or self._sleep
        started = self._clock()
        attempt = 0

        while True:
            attempt += 1
            context = AttemptContext(attempt=attempt, started_at=started)
            result = None

            try:
                result = await self.transport(self.session, spec, context)
            except NetworkError as e:
                error = e
                retryable = True
            else:
                if is_success_status(result.status_code):
                    return self._outcome(spec, context, True, result)
                error = HttpStatusError(result.status_code, retryable=self.policy.is_retryable_status(result.status_code))
                retryable = error.retryable

            if not retryable:
                return self._outcome(spec, context, False, result, error=error.reason)

            if attempt > self.policy.max_retries:
                if self.policy.max_retries:
                    logger.info(
                        "%s %s failed after %d attempts: %s",
                        spec.method, spec.url, attempt, error.reason,
                    )
                return self._outcome(spec, context, False, result, error=error.reason)

            delay = backoff_delay(attempt, self.policy, self._rng)
            if deadline is not None and self._clock() + delay > deadline:
                logger.debug(
                    "Not retrying %s %s: %.3fs backoff exceeds the run deadline",
                    spec.method, spec.url, delay,
                )
                return self._outcome(spec, context, False, result, error=error.reason)

            logger.debug(
                "Retrying %s %s (%d/%d) after %.3fs: %s (attempt took %s)",
                spec.method, spec.url, attempt, self.policy.max_retries, delay, error.reason,
                f"{result.latency_ms:.1f}ms" if result is not None else "-",
            )
            if await sleep(delay) is False:
                logger.debug("Not retrying %s %s: run stopped during backoff", spec.method, spec.url)
                return self._outcome(spec, context, False, result, error=error.reason)

    def _outcome(
        self,
        spec: RequestSpec,
        context: AttemptContext,
        success: bool,
        result: Optional[AttemptResult] = None,
        error: Optional[str] = None,
    ) -> RequestOutcome:
        return RequestOutcome(
            scenario_name=spec.scenario_name,
            success=success,
            latency_ms=(self._clock() - context.started_at) * 1000,
            retry_count=context.retry_count,
            status_code=result.status_code if result is not None else None,
            error=error,
            response_size=result.response_size if result is not None else 0,
            attempt_latency_ms=result.latency_ms if result is not None else None,
        )
