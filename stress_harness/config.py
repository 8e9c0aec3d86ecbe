"""
Run configuration
=================
Scenario definitions, retry policy, think time and the RunConfig that ties
them together, plus the named profiles that replace one-off test scripts.

A RunConfig is built once before the run and treated as read-only while
workers are active.
"""

import json
import string
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .exceptions import ConfigurationError

DEFAULT_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({429, 502, 503, 504})

# Placeholders a VirtualUser can fill in a scenario path
PATH_PLACEHOLDERS = frozenset({"user_id", "iteration"})

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class ScenarioDefinition:
    """One weighted request template."""
    name: str
    path: str
    method: str = "GET"
    weight: float = 1.0
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Any] = None

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())

    def placeholders(self) -> List[str]:
        return [name for _, name, _, _ in string.Formatter().parse(self.path) if name is not None]

    def render_path(self, user_id: int, iteration: int) -> str:
        if "{" not in self.path:
            return self.path
        return self.path.format(user_id=user_id, iteration=iteration)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff shape for one logical request."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
    jitter_max: float = 1.0

    def base_backoff(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (1-based) without jitter, capped at max_delay."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes


@dataclass(frozen=True)
class ThinkTime:
    """Idle time between a virtual user's requests: base + uniform(0, jitter)."""
    base: float = 0.0
    jitter: float = 0.0


@dataclass(frozen=True)
class RunConfig:
    """Everything a load-test run needs. Read-only once the run starts."""
    base_url: str
    scenarios: Tuple[ScenarioDefinition, ...]
    concurrency: int = 10
    duration: Optional[float] = None
    max_requests_per_worker: Optional[int] = None
    think_time: ThinkTime = field(default_factory=ThinkTime)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    request_timeout: float = 15.0
    connect_timeout: float = 5.0
    shutdown_grace: float = 5.0
    headers: Mapping[str, str] = field(default_factory=lambda: {
        "Accept": "application/json",
        "User-Agent": "StressHarness/1.0",
    })
    health_check_path: Optional[str] = None
    verify_ssl: bool = True

    def __post_init__(self):
        object.__setattr__(self, "scenarios", tuple(self.scenarios))

    def validate(self) -> "RunConfig":
        """Raise ConfigurationError on the first problem found; return self otherwise."""
        parsed = urlparse(self.base_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid base URL: {self.base_url!r}")

        if not self.scenarios:
            raise ConfigurationError("At least one scenario is required")

        seen = set()
        for scenario in self.scenarios:
            if not scenario.name:
                raise ConfigurationError("Scenario name must not be empty")
            if scenario.name in seen:
                raise ConfigurationError(f"Duplicate scenario name: {scenario.name!r}")
            seen.add(scenario.name)
            if not scenario.weight > 0:
                raise ConfigurationError(
                    f"Scenario {scenario.name!r} has non-positive weight {scenario.weight!r}"
                )
            try:
                unknown = set(scenario.placeholders()) - PATH_PLACEHOLDERS
            except ValueError as e:
                raise ConfigurationError(f"Scenario {scenario.name!r} has a malformed path: {e}") from e
            if unknown:
                raise ConfigurationError(
                    f"Scenario {scenario.name!r} uses unknown placeholders: {', '.join(sorted(unknown))}"
                )

        if not isinstance(self.concurrency, int) or self.concurrency <= 0:
            raise ConfigurationError(f"Concurrency must be a positive integer, got {self.concurrency!r}")

        if self.duration is None and self.max_requests_per_worker is None:
            raise ConfigurationError("Either duration or max_requests_per_worker must be set")
        if self.duration is not None and self.duration <= 0:
            raise ConfigurationError(f"Duration must be positive, got {self.duration!r}")
        if self.max_requests_per_worker is not None and self.max_requests_per_worker <= 0:
            raise ConfigurationError(
                f"max_requests_per_worker must be positive, got {self.max_requests_per_worker!r}"
            )

        if self.think_time.base < 0 or self.think_time.jitter < 0:
            raise ConfigurationError("Think time values must not be negative")

        policy = self.retry_policy
        if policy.max_retries < 0:
            raise ConfigurationError(f"max_retries must not be negative, got {policy.max_retries!r}")
        if policy.base_delay < 0 or policy.jitter_max < 0:
            raise ConfigurationError("Retry delays must not be negative")
        if policy.max_delay < policy.base_delay:
            raise ConfigurationError("Retry max_delay must be >= base_delay")

        if self.request_timeout <= 0 or self.connect_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.shutdown_grace < 0:
            raise ConfigurationError("shutdown_grace must not be negative")

        return self

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfig":
        """Build a RunConfig from a JSON-style mapping (camelCase or snake_case keys)."""
        data = _normalize_keys(data)
        try:
            scenarios = tuple(_scenario_from_dict(item) for item in data.get("scenarios", []))

            think = data.get("think_time", 0.0)
            if isinstance(think, Mapping):
                think = _normalize_keys(think)
                think_time = ThinkTime(base=float(think.get("base", 0.0)), jitter=float(think.get("jitter", 0.0)))
            else:
                think_time = ThinkTime(base=float(think), jitter=float(data.get("think_time_jitter", 0.0)))

            retry = _normalize_keys(data.get("retry_policy", {}))
            retry_policy = RetryPolicy(
                max_retries=int(retry.get("max_retries", 3)),
                base_delay=float(retry.get("base_delay", 1.0)),
                max_delay=float(retry.get("max_delay", 10.0)),
                retryable_status_codes=frozenset(
                    int(code) for code in retry.get("retryable_status_codes", DEFAULT_RETRYABLE_STATUS_CODES)
                ),
                jitter_max=float(retry.get("jitter_max", 1.0)),
            )

            kwargs: Dict[str, Any] = {
                "base_url": data["base_url"],
                "scenarios": scenarios,
                "concurrency": int(data.get("concurrency", 10)),
                "think_time": think_time,
                "retry_policy": retry_policy,
            }
            if data.get("duration") is not None:
                kwargs["duration"] = float(data["duration"])
            if data.get("max_requests_per_worker") is not None:
                kwargs["max_requests_per_worker"] = int(data["max_requests_per_worker"])
            for key in ("request_timeout", "connect_timeout", "shutdown_grace"):
                if key in data:
                    kwargs[key] = float(data[key])
            if "headers" in data:
                kwargs["headers"] = dict(data["headers"])
            if data.get("health_check_path"):
                kwargs["health_check_path"] = data["health_check_path"]
            if "verify_ssl" in data:
                kwargs["verify_ssl"] = bool(data["verify_ssl"])
        except KeyError as e:
            raise ConfigurationError(f"Missing required configuration key: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        return cls(**kwargs)


def _camel_to_snake(key: str) -> str:
    out = []
    for char in key:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out).lstrip("_")


def _normalize_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Expected a mapping, got {type(data).__name__}")
    normalized = {_camel_to_snake(key): value for key, value in data.items()}
    # baseURL -> base_u_r_l
    if "base_u_r_l" in normalized:
        normalized["base_url"] = normalized.pop("base_u_r_l")
    return normalized


def _scenario_from_dict(item: Mapping[str, Any]) -> ScenarioDefinition:
    item = _normalize_keys(item)
    path = item.get("path", item.get("url"))
    if path is None:
        raise ConfigurationError(f"Scenario {item.get('name')!r} has no path")
    return ScenarioDefinition(
        name=item["name"],
        path=path,
        method=item.get("method", "GET"),
        weight=float(item.get("weight", 1.0)),
        headers=dict(item.get("headers", {})),
        body=item.get("body"),
    )


def read_config_file(path: str) -> Dict[str, Any]:
    """Raw JSON document of a config file."""
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def load_run_config(path: str, validate: bool = True, **overrides: Any) -> RunConfig:
    """
    Load a RunConfig from a JSON file. Keyword overrides (snake_case) replace
    the file's values before parsing, so they can also supply missing keys.
    """
    data = _normalize_keys(read_config_file(path))
    data.update({key: value for key, value in overrides.items() if value is not None})
    config = RunConfig.from_dict(data)
    return config.validate() if validate else config


# =============================================================================
# PROFILES
# =============================================================================

DEFAULT_SCENARIOS: Tuple[ScenarioDefinition, ...] = (
    ScenarioDefinition(name="Get Items List", path="/api/items?page=1&limit=20", weight=50),
    ScenarioDefinition(name="Search Items", path="/api/items?search=test&page=1&limit=10", weight=20),
    ScenarioDefinition(name="Get Categories", path="/api/categories", weight=15),
    ScenarioDefinition(name="Health Check", path="/api/health", weight=10),
    ScenarioDefinition(name="Detailed Health Check", path="/api/health/detailed", weight=5),
)

PROFILES: Dict[str, Dict[str, Any]] = {
    "smoke": {
        "name": "Smoke",
        "description": "A handful of users for a few requests each, to check the target responds",
        "params": {
            "concurrency": 2,
            "max_requests_per_worker": 5,
            "think_time": ThinkTime(base=0.1),
            "retry_policy": RetryPolicy(max_retries=1, base_delay=0.5, max_delay=2.0),
        },
    },
    "reliability": {
        "name": "Reliability",
        "description": "25 users with realistic 2-3s think time for 60s",
        "params": {
            "concurrency": 25,
            "duration": 60.0,
            "think_time": ThinkTime(base=2.0, jitter=1.0),
            "retry_policy": RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0),
            "request_timeout": 15.0,
        },
    },
    "throughput": {
        "name": "Throughput",
        "description": "50 users without think time for 30s, capped at 1000 requests each",
        "params": {
            "concurrency": 50,
            "duration": 30.0,
            "max_requests_per_worker": 1000,
            "think_time": ThinkTime(),
            "retry_policy": RetryPolicy(max_retries=0),
            "request_timeout": 5.0,
        },
    },
    "stress": {
        "name": "Stress",
        "description": "35 users with 1.5s think time for 90s",
        "params": {
            "concurrency": 35,
            "duration": 90.0,
            "think_time": ThinkTime(base=1.5, jitter=0.5),
            "retry_policy": RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0),
            "request_timeout": 30.0,
        },
    },
    "endurance": {
        "name": "Endurance",
        "description": "25 users with realistic think time for 30 minutes",
        "params": {
            "concurrency": 25,
            "duration": 1800.0,
            "think_time": ThinkTime(base=2.0, jitter=1.0),
            "retry_policy": RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0),
        },
    },
}


def build_profile(name: str, base_url: str, **overrides: Any) -> RunConfig:
    """Build a RunConfig from a named profile; keyword overrides win over profile values."""
    if name not in PROFILES:
        raise ConfigurationError(f"Unknown profile: {name!r} (available: {', '.join(PROFILES)})")
    params = dict(PROFILES[name]["params"])
    params.setdefault("scenarios", DEFAULT_SCENARIOS)
    config = RunConfig(base_url=base_url, **params)
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        config = replace(config, **overrides)
    return config
