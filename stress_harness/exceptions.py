"""
Error taxonomy for the load-test engine.

Only ConfigurationError (and its subclasses) is allowed to escape a run.
Network, timeout and status errors are raised by transports and converted
into RequestOutcome values inside the retry loop.
"""

from typing import Optional


class StressHarnessError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(StressHarnessError):
    """Invalid run configuration; raised before any worker starts."""


class TargetUnavailableError(ConfigurationError):
    """The preflight health check against the target failed."""


class NetworkError(StressHarnessError):
    """Connection-level failure while talking to the target. Retryable."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def reason(self) -> str:
        if self.cause is None:
            return "ConnectionError"
        return f"ConnectionError: {type(self.cause).__name__}"


class RequestTimeoutError(NetworkError):
    """A single attempt exceeded its timeout. Retryable."""

    @property
    def reason(self) -> str:
        return "Timeout"


class HttpStatusError(StressHarnessError):
    """The target answered with a status outside [200, 400)."""

    def __init__(self, status_code: int, retryable: bool = False):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.retryable = retryable

    @property
    def reason(self) -> str:
        return f"HTTP {self.status_code}"
