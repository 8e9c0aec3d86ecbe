"""
Report generation
=================
Turns finalized AggregateStats into a graded report and renders it as a rich
console panel, JSON or Markdown.

Grading is presentation only: it reads the statistics and never changes them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import RunConfig
from .exceptions import ConfigurationError
from .metrics import AggregateStats, LatencySummary, ScenarioStats


class ReportFormat(Enum):
    JSON = "json"
    MARKDOWN = "markdown"
    CONSOLE = "console"


class Grade(Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    NO_DATA = "NO DATA"


GRADE_STYLES = {
    Grade.EXCELLENT: ("green", "✅"),
    Grade.GOOD: ("yellow", "🟡"),
    Grade.FAIR: ("dark_orange", "⚠️"),
    Grade.POOR: ("red", "❌"),
    Grade.NO_DATA: ("dim", "➖"),
}


@dataclass(frozen=True)
class Bands:
    """Three cut-offs splitting a metric into EXCELLENT/GOOD/FAIR/POOR."""
    excellent: float
    good: float
    fair: float
    higher_is_better: bool = True

    def grade(self, value: float) -> Grade:
        if self.higher_is_better:
            if value >= self.excellent:
                return Grade.EXCELLENT
            if value >= self.good:
                return Grade.GOOD
            if value >= self.fair:
                return Grade.FAIR
            return Grade.POOR
        if value <= self.excellent:
            return Grade.EXCELLENT
        if value <= self.good:
            return Grade.GOOD
        if value <= self.fair:
            return Grade.FAIR
        return Grade.POOR

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], higher_is_better: bool = True) -> "Bands":
        try:
            return cls(
                excellent=float(data["excellent"]),
                good=float(data["good"]),
                fair=float(data["fair"]),
                higher_is_better=higher_is_better,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid grading bands {dict(data)!r}: {e}") from e


@dataclass(frozen=True)
class GradingThresholds:
    """
    reliability: success rate in percent.
    throughput: requests per second.
    p99: 99th percentile latency in milliseconds (lower is better).
    """
    reliability: Bands = Bands(excellent=98, good=95, fair=90)
    throughput: Bands = Bands(excellent=15, good=10, fair=5)
    p99: Bands = Bands(excellent=300, good=500, fair=1000, higher_is_better=False)
    reliability_target: float = 95.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GradingThresholds":
        """Accepts reliabilityBands / throughputBands / p99Bands (or snake_case) keys."""
        default = cls()

        def pick(*keys):
            for key in keys:
                if key in data:
                    return data[key]
            return None

        reliability = pick("reliabilityBands", "reliability_bands")
        throughput = pick("throughputBands", "throughput_bands")
        p99 = pick("p99Bands", "p99_bands")
        target = pick("reliabilityTarget", "reliability_target")
        return cls(
            reliability=Bands.from_dict(reliability) if reliability else default.reliability,
            throughput=Bands.from_dict(throughput) if throughput else default.throughput,
            p99=Bands.from_dict(p99, higher_is_better=False) if p99 else default.p99,
            reliability_target=float(target) if target is not None else default.reliability_target,
        )


@dataclass(frozen=True)
class ScenarioReport:
    name: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    latency: LatencySummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate_percent": round(self.success_rate, 2),
            "latency_ms": self.latency.to_dict(),
        }


@dataclass(frozen=True)
class Report:
    """Everything a reader needs to judge one run."""
    test_name: str
    target: str
    generated_at: str
    configuration: Dict[str, Any]
    total_requests: int
    successful_requests: int
    failed_requests: int
    retries: int
    bytes_received: int
    duration_seconds: float
    requests_per_second: float
    successful_requests_per_second: float
    errors_per_second: float
    success_rate: float
    error_rate: float
    latency: LatencySummary
    scenarios: List[ScenarioReport]
    reliability_grade: Grade
    throughput_grade: Grade
    latency_grade: Grade
    slo_met: bool
    reliability_target: float
    errors: List[Tuple[str, int]] = field(default_factory=list)
    status_codes: Dict[int, int] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_name": self.test_name,
            "target": self.target,
            "generated_at": self.generated_at,
            "configuration": self.configuration,
            "summary": {
                "total_requests": self.total_requests,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "retries": self.retries,
                "total_bytes": self.bytes_received,
                "duration_seconds": round(self.duration_seconds, 2),
            },
            "rates": {
                "success_rate_percent": round(self.success_rate, 2),
                "error_rate_percent": round(self.error_rate, 2),
                "requests_per_second": round(self.requests_per_second, 2),
                "successful_requests_per_second": round(self.successful_requests_per_second, 2),
                "errors_per_second": round(self.errors_per_second, 2),
            },
            "latency_ms": self.latency.to_dict(),
            "grades": {
                "reliability": self.reliability_grade.value,
                "throughput": self.throughput_grade.value,
                "latency": self.latency_grade.value,
            },
            "slo": {
                "reliability_target_percent": self.reliability_target,
                "met": self.slo_met,
            },
            "scenarios": [scenario.to_dict() for scenario in self.scenarios],
            "errors": [{"reason": reason, "count": count} for reason, count in self.errors],
            "status_codes": {str(code): count for code, count in self.status_codes.items()},
            "recommendations": list(self.recommendations),
        }


class ReportGenerator:
    """Grades a finalized run and assembles its Report."""

    def __init__(self, thresholds: Optional[GradingThresholds] = None):
        self.thresholds = thresholds or GradingThresholds()

    def render(self, stats: AggregateStats, config: RunConfig, test_name: str = "Load Test") -> Report:
        latency = stats.latency
        t = self.thresholds

        if stats.total_requests:
            reliability_grade = t.reliability.grade(stats.success_rate)
            throughput_grade = t.throughput.grade(stats.requests_per_second)
        else:
            reliability_grade = throughput_grade = Grade.NO_DATA
        latency_grade = t.p99.grade(latency.p99) if latency.has_data else Grade.NO_DATA

        slo_met = stats.total_requests > 0 and stats.success_rate >= t.reliability_target
        errors = sorted(stats.errors.items(), key=lambda item: (-item[1], item[0]))

        report = Report(
            test_name=test_name,
            target=config.base_url,
            generated_at=datetime.now(timezone.utc).isoformat(),
            configuration=_describe_config(config),
            total_requests=stats.total_requests,
            successful_requests=stats.success_count,
            failed_requests=stats.failure_count,
            retries=stats.retry_count,
            bytes_received=stats.total_bytes_received,
            duration_seconds=stats.elapsed_seconds,
            requests_per_second=stats.requests_per_second,
            successful_requests_per_second=stats.successful_requests_per_second,
            errors_per_second=stats.errors_per_second,
            success_rate=stats.success_rate,
            error_rate=stats.error_rate,
            latency=latency,
            scenarios=[_scenario_report(s) for s in stats.per_scenario.values()],
            reliability_grade=reliability_grade,
            throughput_grade=throughput_grade,
            latency_grade=latency_grade,
            slo_met=slo_met,
            reliability_target=t.reliability_target,
            errors=errors,
            status_codes=dict(sorted(stats.status_codes.items())),
            recommendations=self._recommendations(stats, latency, errors, slo_met),
        )
        return report

    def _recommendations(
        self,
        stats: AggregateStats,
        latency: LatencySummary,
        errors: List[Tuple[str, int]],
        slo_met: bool,
    ) -> List[str]:
        t = self.thresholds
        if not stats.total_requests:
            return [
                "No requests completed: check that the target is reachable "
                "and that the stop condition allows at least one request"
            ]

        advice = []
        if not slo_met:
            advice.append(
                f"Investigate and fix error sources to reach the {t.reliability_target:g}% success target"
            )
        if errors:
            reason, count = errors[0]
            advice.append(f"Most frequent error: {reason} ({count:,} occurrences)")
        if t.throughput.grade(stats.requests_per_second) in (Grade.FAIR, Grade.POOR):
            advice.append("Consider performance optimizations to improve throughput")
        if latency.has_data and t.p99.grade(latency.p99) in (Grade.FAIR, Grade.POOR):
            advice.append(
                f"Optimize slow endpoints and add caching (p99 {latency.p99:.0f}ms, "
                f"target <= {t.p99.good:g}ms)"
            )
        if not advice:
            advice.append("System meets the configured service-level objectives")
        return advice


def _scenario_report(stats: ScenarioStats) -> ScenarioReport:
    return ScenarioReport(
        name=stats.name,
        total_requests=stats.total_requests,
        successful_requests=stats.success_count,
        failed_requests=stats.failure_count,
        success_rate=stats.success_rate,
        latency=stats.latency,
    )


def _describe_config(config: RunConfig) -> Dict[str, Any]:
    return {
        "concurrency": config.concurrency,
        "duration_seconds": config.duration,
        "max_requests_per_worker": config.max_requests_per_worker,
        "think_time_seconds": config.think_time.base,
        "think_time_jitter_seconds": config.think_time.jitter,
        "max_retries": config.retry_policy.max_retries,
        "request_timeout_seconds": config.request_timeout,
        "scenarios": [
            {"name": s.name, "method": s.method, "path": s.path, "weight": s.weight}
            for s in config.scenarios
        ],
    }


# =============================================================================
# RENDERERS
# =============================================================================

def _grade_markup(grade: Grade) -> str:
    style, icon = GRADE_STYLES[grade]
    return f"{icon} [{style}]{grade.value}[/{style}]"


def render_json(report: Report) -> str:
    return json.dumps(report.to_dict(), indent=2)


def render_console(report: Report, console: Optional[Console] = None) -> None:
    """Print the report as rich panels and tables."""
    console = console or Console()
    lat = report.latency

    console.print("\n")
    console.print(Panel(
        f"""[bold]{report.test_name}[/bold]  [dim]{report.target}[/dim]

[cyan]Total Requests:[/cyan]     {report.total_requests:,}
[green]Successful:[/green]         {report.successful_requests:,} ({report.success_rate:.2f}%)
[red]Failed:[/red]             {report.failed_requests:,} ({report.error_rate:.2f}%)
[dim]Retries:[/dim]            {report.retries:,}

[cyan]Duration:[/cyan]           {report.duration_seconds:.2f}s
[cyan]Throughput:[/cyan]         {report.requests_per_second:,.2f} req/s
[cyan]Errors/Second:[/cyan]      {report.errors_per_second:,.2f}
[cyan]Data Transfer:[/cyan]      {report.bytes_received / (1024 * 1024):.2f} MB

[bold]Latency Statistics (ms):[/bold]
  Min:      {lat.min:.2f}
  Average:  {lat.avg:.2f}
  P50:      {lat.p50:.2f}
  P95:      {lat.p95:.2f}
  P99:      {lat.p99:.2f}
  Max:      {lat.max:.2f}

[bold]Grades:[/bold]
  Reliability:    {_grade_markup(report.reliability_grade)} ({report.success_rate:.2f}% success)
  Throughput:     {_grade_markup(report.throughput_grade)} ({report.requests_per_second:.2f} req/s)
  Response Time:  {_grade_markup(report.latency_grade)} ({lat.p99:.2f}ms p99)

[bold]Reliability Target ({report.reliability_target:g}%):[/bold] {'[green]✓ ACHIEVED[/green]' if report.slo_met else '[red]✗ NOT MET[/red]'}
""",
        title="📊 Final Results",
        border_style="green" if report.slo_met else "red",
    ))

    table = Table(title="📋 Scenario Performance", expand=True)
    table.add_column("Scenario", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Avg (ms)", justify="right")
    table.add_column("P95 (ms)", justify="right")
    table.add_column("P99 (ms)", justify="right")
    for row in report.scenarios:
        table.add_row(
            row.name,
            f"{row.total_requests:,}",
            f"[green]{row.success_rate:.1f}%[/green]",
            f"[red]{row.failed_requests:,}[/red]" if row.failed_requests else "0",
            f"{row.latency.avg:.1f}",
            f"{row.latency.p95:.1f}",
            f"{row.latency.p99:.1f}",
        )
    console.print(table)

    if report.errors:
        errors = Table(title="🔍 Error Analysis")
        errors.add_column("Reason", style="red")
        errors.add_column("Count", justify="right")
        errors.add_column("Share", justify="right")
        for reason, count in report.errors:
            share = count / report.failed_requests * 100 if report.failed_requests else 0
            errors.add_row(reason, f"{count:,}", f"{share:.1f}%")
        console.print(errors)
    else:
        console.print("[green]🔍 No errors detected[/green]")

    console.print("\n[bold]💡 Recommendations:[/bold]")
    for line in report.recommendations:
        console.print(f"   • {line}")


def render_markdown(report: Report) -> str:
    lat = report.latency
    scenario_rows = "".join(
        f"| {row.name} | {row.total_requests:,} | {row.success_rate:.1f}% | {row.failed_requests:,} "
        f"| {row.latency.avg:.1f} | {row.latency.p95:.1f} | {row.latency.p99:.1f} |\n"
        for row in report.scenarios
    )
    if report.errors:
        error_rows = "| Reason | Count |\n|--------|-------|\n" + "".join(
            f"| {reason} | {count:,} |\n" for reason, count in report.errors
        )
    else:
        error_rows = "No errors detected.\n"
    recommendations = "".join(f"- {line}\n" for line in report.recommendations)

    return f"""# 📊 {report.test_name}

**Target:** `{report.target}`
**Generated:** {report.generated_at}

---

## Summary

| Metric | Value |
|--------|-------|
| Total Requests | {report.total_requests:,} |
| Successful | {report.successful_requests:,} ({report.success_rate:.2f}%) |
| Failed | {report.failed_requests:,} ({report.error_rate:.2f}%) |
| Retries | {report.retries:,} |
| Duration | {report.duration_seconds:.2f}s |
| Requests/Second | {report.requests_per_second:,.2f} |
| Errors/Second | {report.errors_per_second:,.2f} |
| Total Data | {report.bytes_received / (1024 * 1024):.2f} MB |

---

## Latency (ms)

| Statistic | Value |
|-----------|-------|
| Min | {lat.min:.2f} |
| Average | {lat.avg:.2f} |
| P50 | {lat.p50:.2f} |
| P95 | {lat.p95:.2f} |
| P99 | {lat.p99:.2f} |
| Max | {lat.max:.2f} |

---

## Grades

| Dimension | Grade | Value |
|-----------|-------|-------|
| Reliability | {report.reliability_grade.value} | {report.success_rate:.2f}% |
| Throughput | {report.throughput_grade.value} | {report.requests_per_second:.2f} req/s |
| Response Time | {report.latency_grade.value} | {lat.p99:.2f}ms p99 |

**Reliability target ({report.reliability_target:g}%):** {'✅ ACHIEVED' if report.slo_met else '❌ NOT MET'}

---

## Scenarios

| Scenario | Requests | Success | Failed | Avg (ms) | P95 (ms) | P99 (ms) |
|----------|----------|---------|--------|----------|----------|----------|
{scenario_rows}
---

## Errors

{error_rows}
---

## Recommendations

{recommendations}"""


def save_report(report: Report, format: ReportFormat, output_path: str) -> None:
    if format == ReportFormat.MARKDOWN:
        text = render_markdown(report)
    elif format == ReportFormat.JSON:
        text = render_json(report)
    else:
        console = Console(record=True, width=110)
        render_console(report, console)
        text = console.export_text()
    Path(output_path).write_text(text)
