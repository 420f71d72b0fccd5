"""Typer CLI for tokscan: usage reports, histograms, live watch and status bar."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from rich.console import Console
from result import Err, Ok

from tokscan.config import Config, load_config
from tokscan.data.providers import watch_roots
from tokscan.errors import TokscanError, UsageError
from tokscan.models.reports import Alignment, Grouping, HistogramPeriod, Report, ReportFilter
from tokscan.render import (
    bar_json,
    compact_line,
    histogram_json,
    print_histogram,
    print_report,
    report_json,
    resolve_columns,
)
from tokscan.services.container import ServiceContainer
from tokscan.services.engine import ReportRequest
from tokscan.services.monitor import LiveMonitor, WatchfilesNotifier

if TYPE_CHECKING:
    from tokscan.data.protocols import ProgressCallback

logger = logging.getLogger(__name__)

EXIT_USAGE = 2
EXIT_FAILURE = 1

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="tokscan",
    help="Token usage and cost reports for AI coding-tool session logs.",
    invoke_without_command=True,
)


class OutputFormat(StrEnum):
    TABLE = "table"
    JSON = "json"


class BarPeriod(StrEnum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


@dataclass
class GlobalOptions:
    """Options shared by every command, captured by the app callback."""

    since: date | None = None
    until: date | None = None
    output: OutputFormat = OutputFormat.TABLE
    offline: bool = False
    breakdown: bool = False
    project: str = ""
    tool: str = ""
    columns: list[str] = field(default_factory=list)
    pricing_source: str | None = None
    currency: str | None = None
    backend: str | None = None
    cache_dir: Path | None = None
    config_file: Path | None = None

    def config(self) -> Config:
        config = load_config(self.config_file)
        overrides: dict[str, object] = {}
        if self.backend:
            overrides["backend"] = self.backend
        if self.cache_dir:
            overrides["cache_dir"] = self.cache_dir
        if self.pricing_source:
            overrides["pricing_source"] = self.pricing_source
        if self.currency:
            overrides["currency"] = self.currency
        return replace(config, **overrides) if overrides else config

    def request(self, **changes: object) -> ReportRequest:
        request = ReportRequest(
            filter=ReportFilter(
                since=self.since, until=self.until, project=self.project, tool=self.tool
            ),
            breakdown=self.breakdown,
            pricing_source=self.pricing_source,
            currency=self.currency,
            offline=self.offline,
        )
        return replace(request, **changes) if changes else request


def _options(ctx: typer.Context) -> GlobalOptions:
    return ctx.obj if isinstance(ctx.obj, GlobalOptions) else GlobalOptions()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    since: Annotated[
        datetime | None,
        typer.Option("--from", formats=["%Y-%m-%d"], help="First day to include (YYYY-MM-DD)"),
    ] = None,
    until: Annotated[
        datetime | None,
        typer.Option("--to", formats=["%Y-%m-%d"], help="Last day to include (YYYY-MM-DD)"),
    ] = None,
    output: Annotated[
        OutputFormat, typer.Option("--format", help="Output format")
    ] = OutputFormat.TABLE,
    offline: Annotated[
        bool, typer.Option("--offline", help="Use cached pricing only; never fetch")
    ] = False,
    breakdown: Annotated[
        bool, typer.Option("--breakdown", help="Show per-model rows under each bucket")
    ] = False,
    project: Annotated[
        str, typer.Option("--project", help="Only projects containing this text")
    ] = "",
    tool: Annotated[str, typer.Option("--tool", help="Only this tool (claude, codex, ...)")] = "",
    columns: Annotated[
        list[str] | None,
        typer.Option(
            "--columns",
            help="Columns to show, or +name/-name to edit the defaults",
        ),
    ] = None,
    pricing_source: Annotated[
        str | None,
        typer.Option("--pricing-source", help="litellm, openrouter or llmprices"),
    ] = None,
    currency: Annotated[
        str | None, typer.Option("--currency", help="Currency code, e.g. EUR")
    ] = None,
    backend: Annotated[
        str | None, typer.Option("--backend", help="Cache backend: blob or sqlite")
    ] = None,
    cache_dir: Annotated[
        Path | None, typer.Option("--cache-dir", help="Cache directory")
    ] = None,
    config_file: Annotated[
        Path | None, typer.Option("--config", help="Path to config.toml")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Daily usage report (default command)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if backend is not None and backend not in ("blob", "sqlite"):
        _fail(UsageError(f"Unknown backend '{backend}' (expected blob or sqlite)"))
    ctx.obj = GlobalOptions(
        since=since.date() if since else None,
        until=until.date() if until else None,
        output=output,
        offline=offline,
        breakdown=breakdown,
        project=project,
        tool=tool,
        columns=columns or [],
        pricing_source=pricing_source,
        currency=currency,
        backend=backend,
        cache_dir=cache_dir,
        config_file=config_file,
    )
    if ctx.invoked_subcommand is None:
        _report(ctx.obj, Grouping.DAY)


@app.command()
def daily(ctx: typer.Context) -> None:
    """Aggregate by day."""
    _report(_options(ctx), Grouping.DAY)


@app.command()
def monthly(ctx: typer.Context) -> None:
    """Aggregate by month."""
    _report(_options(ctx), Grouping.MONTH)


@app.command()
def session(ctx: typer.Context) -> None:
    """Aggregate by session."""
    _report(_options(ctx), Grouping.SESSION)


@app.command()
def model(ctx: typer.Context) -> None:
    """Aggregate by model."""
    _report(_options(ctx), Grouping.MODEL)


@app.command()
def plot(
    ctx: typer.Context,
    period: Annotated[
        HistogramPeriod, typer.Argument(help="Window: 1d, 1w or 1m")
    ] = HistogramPeriod.MONTH,
    relative: Annotated[
        bool, typer.Option("--relative", help="End the window now instead of on the clock")
    ] = False,
) -> None:
    """Token usage histogram over a recent window."""
    options = _options(ctx)
    request = options.request(
        period=period, alignment=Alignment.RELATIVE if relative else Alignment.CLOCK
    )
    asyncio.run(_plot(options, request))


@app.command()
def watch(
    ctx: typer.Context,
    full: Annotated[
        bool, typer.Option("--full", help="Show the full table instead of one line")
    ] = False,
    interval: Annotated[
        float | None, typer.Option("--interval", help="Quiet seconds before a refresh")
    ] = None,
) -> None:
    """Live-updating cost monitor."""
    options = _options(ctx)
    request = options.request(breakdown=options.breakdown or not full, watch_full=full)
    if interval is not None:
        request = replace(request, watch_interval=interval)
    asyncio.run(_watch(options, request))


@app.command()
def bar(
    ctx: typer.Context,
    period: Annotated[BarPeriod, typer.Option("--period", help="today, week or month")] = (
        BarPeriod.TODAY
    ),
    template: Annotated[
        str,
        typer.Option(
            "--template", help="Text template: {cost} {input} {output} {models} {projects}"
        ),
    ] = "{cost}",
    warn: Annotated[
        float | None, typer.Option("--warn", help="Cost at which class becomes warning")
    ] = None,
    critical: Annotated[
        float | None, typer.Option("--critical", help="Cost at which class becomes critical")
    ] = None,
) -> None:
    """Status-bar JSON for the current day, week or month."""
    since, until = bar_range(period, date.today())
    options = replace(_options(ctx), since=since, until=until)
    request = options.request(breakdown=True)
    report = asyncio.run(_build_report(options, request, progress=False))
    typer.echo(
        bar_json(
            report,
            template=template,
            period_label=period.value.capitalize(),
            warn=warn,
            critical=critical,
        )
    )


@app.command()
def rescan(ctx: typer.Context) -> None:
    """Re-parse every session file and rebuild the cache."""
    asyncio.run(_rescan(_options(ctx)))


def bar_range(period: BarPeriod, today: date) -> tuple[date, date]:
    match period:
        case BarPeriod.WEEK:
            return today - timedelta(days=6), today
        case BarPeriod.MONTH:
            return today.replace(day=1), today
        case _:
            return today, today


def _fail(error: TokscanError) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {error}", highlight=False)
    raise typer.Exit(code=EXIT_USAGE if isinstance(error, UsageError) else EXIT_FAILURE)


def _warn(warnings: list[str]) -> None:
    for warning in dict.fromkeys(warnings):
        err_console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)


def _progress(enabled: bool) -> ProgressCallback | None:
    if not enabled or not err_console.is_terminal:
        return None

    def progress(current: int, total: int, message: str) -> None:
        err_console.print(f"\x1b[2K{message} {current}/{total}", end="\r", highlight=False)

    return progress


def _report(options: GlobalOptions, grouping: Grouping) -> None:
    try:
        columns = resolve_columns(options.columns)
    except UsageError as exc:
        _fail(exc)
    request = options.request(grouping=grouping)
    report = asyncio.run(_build_report(options, request, progress=True))
    if options.output == OutputFormat.JSON:
        typer.echo(report_json(report))
    else:
        _warn(report.warnings)
        print_report(console, report, columns, options.breakdown)


async def _build_report(options: GlobalOptions, request: ReportRequest, progress: bool) -> Report:
    container = await ServiceContainer.create(options.config())
    try:
        result = await container.engine.report(request, _progress(progress))
    finally:
        await container.close()
    match result:
        case Ok(report):
            return report
        case Err(error):
            _fail(error)


async def _plot(options: GlobalOptions, request: ReportRequest) -> None:
    container = await ServiceContainer.create(options.config())
    try:
        result = await container.engine.histogram(request, _progress(True))
    finally:
        await container.close()
    match result:
        case Ok(histogram):
            if options.output == OutputFormat.JSON:
                typer.echo(histogram_json(histogram))
            else:
                _warn(histogram.warnings)
                print_histogram(console, histogram)
        case Err(error):
            _fail(error)


async def _watch(options: GlobalOptions, request: ReportRequest) -> None:
    try:
        request.filter.validate_range()
        columns = resolve_columns(options.columns)
    except UsageError as exc:
        _fail(exc)

    config = options.config()
    label = _range_label(request.filter)

    def render(report: Report) -> None:
        if request.watch_full:
            console.clear()
            _warn(report.warnings)
            print_report(console, report, columns, options.breakdown)
        else:
            err_console.file.write(f"\x1b[2K\r{compact_line(report, label)}")
            err_console.file.flush()

    container = await ServiceContainer.create(config)
    try:
        monitor = LiveMonitor(
            container.engine,
            request,
            render,
            WatchfilesNotifier(watch_roots(config)),
            interval=request.watch_interval or config.watch_interval,
            max_interval=config.watch_max_interval,
        )
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signum, monitor.stop)
        await monitor.run()
    finally:
        await container.close()
    if not request.watch_full:
        err_console.file.write("\n")


async def _rescan(options: GlobalOptions) -> None:
    container = await ServiceContainer.create(options.config())
    try:
        result = await container.engine.scan(_progress(True), force=True)
    finally:
        await container.close()
    _warn(result.warnings)
    typer.echo(f"Done! {result}")


def _range_label(flt: ReportFilter) -> str:
    match flt.since, flt.until:
        case None, None:
            return "All time"
        case since, until if since == until:
            return since.isoformat()
        case since, until:
            start = since.isoformat() if since else "..."
            end = until.isoformat() if until else "today"
            return f"{start} to {end}"
