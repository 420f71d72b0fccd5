"""Terminal and JSON renderers for finished reports and histograms."""

from __future__ import annotations

import json
import re
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from tokscan.errors import UsageError
from tokscan.models.reports import Histogram, ModelDetail, Report, ReportBucket

DEFAULT_COLUMNS = (
    "period",
    "input",
    "output",
    "cache_write",
    "cache_read",
    "cost",
    "models",
    "tools",
)

COLUMN_HEADERS = {
    "period": "Period",
    "input": "Input",
    "output": "Output",
    "cache_write": "Cache Write",
    "cache_read": "Cache Read",
    "total": "Total",
    "cost": "Cost",
    "models": "Models",
    "tools": "Tools",
    "projects": "Projects",
}

_NUMERIC_COLUMNS = {"input", "output", "cache_write", "cache_read", "total", "cost"}
_DATE_SUFFIX = re.compile(r"-\d{8}$")
_BAR_WIDTH = 40


def resolve_columns(raw: list[str] | None) -> list[str]:
    """Column list from ``--columns``.

    A plain list replaces the defaults; a list made only of ``+name`` and
    ``-name`` entries edits them.

    Raises:
        UsageError: an unknown column name.
    """
    if not raw:
        return list(DEFAULT_COLUMNS)
    entries = [entry.strip() for item in raw for entry in item.split(",") if entry.strip()]
    names = [entry.lstrip("+-") for entry in entries]
    unknown = [name for name in names if name not in COLUMN_HEADERS]
    if unknown:
        known = ", ".join(COLUMN_HEADERS)
        raise UsageError(f"Unknown column(s): {', '.join(unknown)} (expected: {known})")

    if not all(entry[0] in "+-" for entry in entries):
        return names
    columns = list(DEFAULT_COLUMNS)
    for entry, name in zip(entries, names, strict=True):
        if entry.startswith("+") and name not in columns:
            columns.append(name)
        elif entry.startswith("-") and name in columns:
            columns.remove(name)
    return columns


def short_model_name(model: str) -> str:
    """``claude-sonnet-4-5-20250929`` -> ``sonnet-4-5``."""
    return _DATE_SUFFIX.sub("", model.removeprefix("claude-"))


def format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def format_cost(amount: float, symbol: str) -> str:
    """Format an already converted amount."""
    return f"{symbol}{amount:.2f}"


def _bucket_cell(column: str, bucket: ReportBucket, symbol: str) -> str:
    match column:
        case "period":
            return bucket.key
        case "input":
            return format_tokens(bucket.input_tokens)
        case "output":
            return format_tokens(bucket.output_tokens)
        case "cache_write":
            return format_tokens(bucket.cache_write_tokens)
        case "cache_read":
            return format_tokens(bucket.cache_read_tokens)
        case "total":
            return format_tokens(bucket.total_tokens)
        case "cost":
            return format_cost(bucket.cost, symbol)
        case "models":
            return ", ".join(short_model_name(model) for model in bucket.models)
        case "tools":
            return ", ".join(bucket.tools)
        case "projects":
            return ", ".join(bucket.projects)
        case _:
            return ""


def _detail_cell(column: str, detail: ModelDetail, symbol: str) -> str:
    match column:
        case "period":
            return f"  {short_model_name(detail.model)}"
        case "input":
            return format_tokens(detail.input_tokens)
        case "output":
            return format_tokens(detail.output_tokens)
        case "cache_write":
            return format_tokens(detail.cache_write_tokens)
        case "cache_read":
            return format_tokens(detail.cache_read_tokens)
        case "total":
            total = (
                detail.input_tokens
                + detail.output_tokens
                + detail.cache_write_tokens
                + detail.cache_read_tokens
            )
            return format_tokens(total)
        case "cost":
            return format_cost(detail.cost, symbol)
        case _:
            return ""


def report_table(
    report: Report,
    columns: list[str] | None = None,
    breakdown: bool = False,
) -> Table:
    """Rich table with one row per bucket, optional model rows and a TOTAL row."""
    columns = columns or list(DEFAULT_COLUMNS)
    table = Table(box=box.SQUARE, show_lines=False)
    for column in columns:
        header = COLUMN_HEADERS.get(column, column)
        if column == "period":
            header = report.grouping.value.capitalize()
        table.add_column(header, justify="right" if column in _NUMERIC_COLUMNS else "left")

    for bucket in report.buckets:
        table.add_row(*(_bucket_cell(column, bucket, report.symbol) for column in columns))
        if breakdown:
            for detail in bucket.details:
                table.add_row(
                    *(_detail_cell(column, detail, report.symbol) for column in columns),
                    style="dim",
                )

    table.add_section()
    table.add_row(
        *(_bucket_cell(column, report.total, report.symbol) for column in columns),
        style="bold",
    )
    return table


def print_report(
    console: Console,
    report: Report,
    columns: list[str] | None = None,
    breakdown: bool = False,
) -> None:
    if not report.buckets:
        console.print("No usage records found.")
        return
    console.print(report_table(report, columns, breakdown))


def report_json(report: Report) -> str:
    """Buckets keyed by group key, plus the total and run metadata."""
    payload: dict[str, Any] = {
        "grouping": report.grouping.value,
        "currency": report.currency,
        "buckets": {
            bucket.key: bucket.model_dump(exclude={"key"}) for bucket in report.buckets
        },
        "total": report.total.model_dump(exclude={"key"}),
        "unpriced_models": report.unpriced_models,
        "warnings": report.warnings,
    }
    if report.generated_at is not None:
        payload["generated_at"] = report.generated_at.isoformat()
    return json.dumps(payload, indent=2)


def histogram_table(histogram: Histogram) -> Table:
    """Horizontal bar chart of tokens per bucket."""
    titles = {
        "1d": "Token usage, last 24 hours (30-min buckets)",
        "1w": "Token usage, last 7 days (6-hour buckets)",
        "1m": "Token usage, last 30 days (daily buckets)",
    }
    table = Table(
        title=titles[histogram.period.value],
        box=box.SIMPLE,
        show_header=False,
        pad_edge=False,
    )
    table.add_column("label", style="dim", justify="right")
    table.add_column("bar", style="cyan", no_wrap=True)
    table.add_column("tokens", justify="right")
    table.add_column("cost", justify="right")

    peak = max((bucket.tokens for bucket in histogram.buckets), default=0)
    for bucket in histogram.buckets:
        width = round(bucket.tokens / peak * _BAR_WIDTH) if peak else 0
        if bucket.tokens and not width:
            width = 1
        table.add_row(
            bucket.label,
            "█" * width,
            format_tokens(bucket.tokens) if bucket.tokens else "",
            format_cost(bucket.cost, histogram.symbol) if bucket.cost else "",
        )
    return table


def print_histogram(console: Console, histogram: Histogram) -> None:
    console.print(histogram_table(histogram))
    total_tokens = sum(bucket.tokens for bucket in histogram.buckets)
    console.print(
        f"Total: {format_tokens(total_tokens)} tokens, "
        f"{format_cost(histogram.total_cost, histogram.symbol)}"
    )


def histogram_json(histogram: Histogram) -> str:
    return histogram.model_dump_json(indent=2)


def compact_line(report: Report, label: str) -> str:
    """One-line watch summary: total cost and per-model costs above zero."""
    line = f"{label}: {format_cost(report.total.cost, report.symbol)}"
    parts = [
        f"{short_model_name(detail.model)}: {format_cost(detail.cost, report.symbol)}"
        for detail in report.total.details
        if detail.cost > 0
    ]
    return f"{line} | {', '.join(parts)}" if parts else line


def bar_json(
    report: Report,
    *,
    template: str = "{cost}",
    period_label: str = "Today",
    warn: float | None = None,
    critical: float | None = None,
) -> str:
    """Status-bar payload (``text``, ``tooltip``, ``class``) for a single period."""
    total = report.total
    cost = format_cost(total.cost, report.symbol)
    if not report.buckets:
        payload = {
            "text": cost,
            "tooltip": "No usage",
            "class": "normal",
            "currency": report.currency,
        }
        return json.dumps(payload, ensure_ascii=False)

    text = (
        template.replace("{cost}", cost)
        .replace("{input}", format_tokens(total.input_tokens))
        .replace("{output}", format_tokens(total.output_tokens))
        .replace("{models}", ", ".join(total.models))
        .replace("{projects}", ", ".join(total.projects))
    )
    tooltip = "\n".join(
        [
            f"{period_label}: {cost}",
            *(
                f"  {short_model_name(detail.model)}: {format_cost(detail.cost, report.symbol)}"
                for detail in total.details
            ),
        ]
    )
    if critical is not None and total.cost >= critical:
        level = "critical"
    elif warn is not None and total.cost >= warn:
        level = "warning"
    else:
        level = "normal"
    payload = {"text": text, "tooltip": tooltip, "class": level, "currency": report.currency}
    return json.dumps(payload, ensure_ascii=False)
