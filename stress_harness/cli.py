"""
Command-line entry point
========================

Usage:
    stress-harness --url http://localhost:5000                       # reliability profile
    stress-harness --url http://localhost:5000 --profile throughput --live
    stress-harness --config run.json --report markdown --output report.md
    stress-harness --list-profiles
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import PROFILES, RunConfig, ThinkTime, build_profile, load_run_config, read_config_file
from .exceptions import ConfigurationError
from .harness import LoadTestHarness
from .metrics import MetricsSnapshot
from .report import GradingThresholds, ReportFormat, render_console, render_json, render_markdown, save_report

console = Console()

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stress-harness",
        description="🚀 HTTP load generation and measurement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--profile", "-p", default=None, help="Named profile (default: reliability)")
    source.add_argument("--config", type=str, help="JSON run configuration file")

    parser.add_argument("--url", "-u", help="Target base URL")
    parser.add_argument("--concurrency", "-c", type=int, help="Number of virtual users")
    parser.add_argument("--duration", "-d", type=float, help="Test duration in seconds")
    parser.add_argument("--max-requests", "-n", type=int, help="Requests per virtual user")
    parser.add_argument("--think-time", type=float, help="Base think time between requests in seconds")
    parser.add_argument("--think-jitter", type=float, help="Random extra think time in seconds")
    parser.add_argument("--max-retries", type=int, help="Retries per request for retryable failures")
    parser.add_argument("--timeout", "-t", type=float, help="Per-attempt request timeout in seconds")
    parser.add_argument("--health-check", type=str, help="Path to GET before starting (e.g. /api/health)")
    parser.add_argument("--header", "-H", action="append", help="Custom header (format: Key:Value)")
    parser.add_argument("--no-ssl-verify", action="store_true", help="Disable SSL verification")
    parser.add_argument("--report", choices=[f.value for f in ReportFormat], default="console")
    parser.add_argument("--output", "-o", type=str, help="Output file path for report")
    parser.add_argument("--test-name", type=str, default=None, help="Name for the test report")
    parser.add_argument("--live", action="store_true", help="Show live metrics while the test runs")
    parser.add_argument("--list-profiles", action="store_true", help="List available profiles and exit")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for diagnostic output",
    )
    return parser


def print_profiles():
    """Print all available profiles."""
    console.print("\n[bold]Available Profiles:[/bold]\n")
    for key, profile in PROFILES.items():
        console.print(f"  [cyan]{key:<12}[/cyan] {profile['name']:<12} - {profile['description']}")
    console.print("")


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def _parse_headers(values) -> dict:
    headers = {}
    for item in values or []:
        if ":" not in item:
            raise ConfigurationError(f"Invalid header {item!r}, expected Key:Value")
        key, value = item.split(":", 1)
        headers[key.strip()] = value.strip()
    return headers


def _load_thresholds(path: Optional[str]) -> Optional[GradingThresholds]:
    """Grading bands may live under a "thresholds" key of the config file."""
    if not path:
        return None
    thresholds = read_config_file(path).get("thresholds")
    return GradingThresholds.from_dict(thresholds) if thresholds else None


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Resolve --config / --profile and apply command-line overrides."""
    if args.config:
        config = load_run_config(args.config, validate=False, base_url=args.url)
    else:
        if not args.url:
            raise ConfigurationError("--url is required unless --config is given")
        config = build_profile(args.profile or "reliability", args.url)

    overrides = {}
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.duration is not None:
        overrides["duration"] = args.duration
    if args.max_requests is not None:
        overrides["max_requests_per_worker"] = args.max_requests
    if args.think_time is not None or args.think_jitter is not None:
        overrides["think_time"] = ThinkTime(
            base=args.think_time if args.think_time is not None else config.think_time.base,
            jitter=args.think_jitter if args.think_jitter is not None else config.think_time.jitter,
        )
    if args.max_retries is not None:
        overrides["retry_policy"] = replace(config.retry_policy, max_retries=args.max_retries)
    if args.timeout is not None:
        overrides["request_timeout"] = args.timeout
    if args.health_check:
        overrides["health_check_path"] = args.health_check
    if args.header:
        overrides["headers"] = {**config.headers, **_parse_headers(args.header)}
    if args.no_ssl_verify:
        overrides["verify_ssl"] = False

    if overrides:
        config = replace(config, **overrides)
    return config.validate()


def _progress_table(snapshot: MetricsSnapshot, started: float) -> Table:
    elapsed = time.monotonic() - started
    rps = snapshot.total_requests / elapsed if elapsed > 0 else 0.0

    table = Table(title="📊 Live Metrics", expand=True)
    table.add_column("Metric", style="cyan", width=22)
    table.add_column("Value", style="green", width=15)
    table.add_column("Metric", style="cyan", width=22)
    table.add_column("Value", style="green", width=15)
    table.add_row(
        "Total Requests", f"{snapshot.total_requests:,}",
        "Success Rate", f"{snapshot.success_rate:.1f}%",
    )
    table.add_row(
        "Successful", f"[green]{snapshot.success_count:,}[/green]",
        "Failed", f"[red]{snapshot.failure_count:,}[/red]",
    )
    table.add_row(
        "Retries", f"[yellow]{snapshot.retry_count:,}[/yellow]",
        "Current RPS", f"{rps:,.1f}",
    )
    table.add_row("Elapsed", f"{elapsed:.1f}s", "", "")
    return table


def _print_banner(config: RunConfig, test_name: str):
    scenarios = ", ".join(f"{s.name} ({s.weight:g})" for s in config.scenarios)
    stop = []
    if config.duration is not None:
        stop.append(f"{config.duration:g}s")
    if config.max_requests_per_worker is not None:
        stop.append(f"{config.max_requests_per_worker:,} requests/user")
    console.print(Panel(
        f"""[bold]Target:[/bold] {config.base_url}
[bold]Virtual users:[/bold] {config.concurrency}
[bold]Stop after:[/bold] {' or '.join(stop)}
[bold]Think time:[/bold] {config.think_time.base:g}s + up to {config.think_time.jitter:g}s
[bold]Max retries:[/bold] {config.retry_policy.max_retries}
[bold]Scenarios:[/bold] {scenarios}""",
        title=f"🚀 {test_name}",
        border_style="cyan",
    ))


def run(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    thresholds = _load_thresholds(args.config)
    if args.test_name:
        test_name = args.test_name
    elif args.config:
        test_name = f"{Path(args.config).stem} Load Test"
    else:
        test_name = f"{PROFILES[args.profile or 'reliability']['name']} Test"
    report_format = ReportFormat(args.report)

    if report_format == ReportFormat.CONSOLE:
        _print_banner(config, test_name)

    harness = LoadTestHarness(config, thresholds=thresholds, test_name=test_name)
    try:
        if args.live:
            started = time.monotonic()
            with Live(_progress_table(MetricsSnapshot(), started), refresh_per_second=4, console=console) as live:
                harness.progress_callback = lambda snapshot: live.update(_progress_table(snapshot, started))
                report = harness.run()
        else:
            report = harness.run()
    except KeyboardInterrupt:
        harness.stop()
        console.print("\n[dim]Interrupted.[/dim]")
        return EXIT_INTERRUPTED

    if args.output:
        save_report(report, report_format, args.output)
        console.print(f"[green]✓ Report saved to: {args.output}[/green]")
    elif report_format == ReportFormat.JSON:
        print(render_json(report))
    elif report_format == ReportFormat.MARKDOWN:
        print(render_markdown(report))

    if report_format == ReportFormat.CONSOLE:
        render_console(report, console)
    return EXIT_OK


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.list_profiles:
        print_profiles()
        return EXIT_OK

    try:
        return run(args)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
