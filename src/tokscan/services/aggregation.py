"""Aggregation engine: filter, deduplicate, price, convert and group usage records."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo

from tokscan.models.pricing import CurrencyRate, PriceTable
from tokscan.models.records import UsageRecord
from tokscan.models.reports import (
    Alignment,
    Grouping,
    Histogram,
    HistogramBucket,
    HistogramPeriod,
    ModelDetail,
    Report,
    ReportBucket,
    ReportFilter,
)
from tokscan.services.cost import record_cost

logger = logging.getLogger(__name__)

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class HistogramLayout:
    """Window length, bucket width and clock-alignment unit for a period."""

    window: timedelta
    width: timedelta
    unit: timedelta

    @property
    def bucket_count(self) -> int:
        return int(self.window / self.width)


HISTOGRAM_LAYOUTS: dict[HistogramPeriod, HistogramLayout] = {
    HistogramPeriod.DAY: HistogramLayout(
        timedelta(hours=24), timedelta(minutes=30), timedelta(hours=1)
    ),
    HistogramPeriod.WEEK: HistogramLayout(
        timedelta(days=7), timedelta(hours=6), timedelta(days=1)
    ),
    HistogramPeriod.MONTH: HistogramLayout(
        timedelta(days=30), timedelta(days=1), timedelta(days=1)
    ),
}


@dataclass
class _Accumulator:
    """Running sums for one bucket (or one model inside a bucket)."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0
    record_count: int = 0
    models: set[str] = field(default_factory=set)
    tools: set[str] = field(default_factory=set)
    projects: set[str] = field(default_factory=set)
    details: dict[str, _Accumulator] = field(default_factory=dict)

    def add(self, record: UsageRecord, cost: float, *, breakdown: bool = False) -> None:
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.cache_write_tokens += record.cache_write_tokens
        self.cache_read_tokens += record.cache_read_tokens
        self.cost += cost
        self.record_count += 1
        if record.model:
            self.models.add(record.model)
        if record.tool:
            self.tools.add(record.tool)
        if record.project:
            self.projects.add(record.project)
        if breakdown:
            self.details.setdefault(record.model, _Accumulator()).add(record, cost)

    def merge(self, other: _Accumulator) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost += other.cost
        self.record_count += other.record_count
        self.models |= other.models
        self.tools |= other.tools
        self.projects |= other.projects
        for model, detail in other.details.items():
            self.details.setdefault(model, _Accumulator()).merge(detail)

    def to_bucket(self, key: str) -> ReportBucket:
        details = sorted(self.details.items(), key=lambda item: (-item[1].cost, item[0]))
        return ReportBucket(
            key=key,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_write_tokens=self.cache_write_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cost=self.cost,
            record_count=self.record_count,
            models=sorted(self.models),
            tools=sorted(self.tools),
            projects=sorted(self.projects),
            details=[
                ModelDetail(
                    model=model,
                    input_tokens=detail.input_tokens,
                    output_tokens=detail.output_tokens,
                    cache_write_tokens=detail.cache_write_tokens,
                    cache_read_tokens=detail.cache_read_tokens,
                    cost=detail.cost,
                    record_count=detail.record_count,
                )
                for model, detail in details
            ],
        )


def filter_records(records: Iterable[UsageRecord], flt: ReportFilter) -> list[UsageRecord]:
    """Keep records inside the date range (in the filter's timezone), project and tool."""
    project = flt.project.strip().lower()
    tool = flt.tool.strip().lower()
    kept: list[UsageRecord] = []
    for record in records:
        if flt.since is not None or flt.until is not None:
            day = record.local_time(flt.tz).date()
            if flt.since is not None and day < flt.since:
                continue
            if flt.until is not None and day > flt.until:
                continue
        if project and project not in record.project.lower():
            continue
        if tool and tool != record.tool.lower():
            continue
        kept.append(record)
    return kept


def deduplicate(records: Iterable[UsageRecord]) -> list[UsageRecord]:
    """Drop replayed records sharing (tool, message id, request id); first one wins.

    Records without a message id are never considered duplicates.
    """
    seen: set[tuple[str, str, str]] = set()
    unique: list[UsageRecord] = []
    for record in records:
        if record.message_id:
            key = (record.tool, record.message_id, record.request_id)
            if key in seen:
                continue
            seen.add(key)
        unique.append(record)
    return unique


def group_key(record: UsageRecord, grouping: Grouping, tz: tzinfo | None = None) -> str:
    match grouping:
        case Grouping.DAY:
            return record.local_time(tz).date().isoformat()
        case Grouping.MONTH:
            return record.local_time(tz).strftime("%Y-%m")
        case Grouping.SESSION:
            return record.session_id
        case _:
            return record.model


def aggregate(
    records: Iterable[UsageRecord],
    *,
    grouping: Grouping = Grouping.DAY,
    flt: ReportFilter | None = None,
    breakdown: bool = False,
    prices: PriceTable,
    rate: CurrencyRate | None = None,
) -> Report:
    """Build a report from raw cached records.

    Raises:
        UsageError: the filter's date range is inverted.
    """
    flt = flt or ReportFilter()
    flt.validate_range()
    rate = rate or CurrencyRate()

    selected = deduplicate(filter_records(records, flt))
    groups: dict[str, _Accumulator] = {}
    unpriced: set[str] = set()
    for record in selected:
        cost = record_cost(record, prices)
        if cost is None:
            unpriced.add(record.model)
            cost = 0.0
        key = group_key(record, grouping, flt.tz)
        groups.setdefault(key, _Accumulator()).add(
            record, rate.convert(cost), breakdown=breakdown
        )

    if grouping.is_period:
        ordered = sorted(groups.items())
    else:
        ordered = sorted(groups.items(), key=lambda item: (-item[1].cost, item[0]))

    total = _Accumulator()
    for _, accumulator in ordered:
        total.merge(accumulator)

    logger.debug("Aggregated %d records into %d %s buckets", len(selected), len(groups), grouping)
    return Report(
        grouping=grouping,
        buckets=[accumulator.to_bucket(key) for key, accumulator in ordered],
        total=total.to_bucket("TOTAL"),
        currency=rate.code,
        symbol=rate.symbol,
        unpriced_models=sorted(unpriced),
        record_count=len(selected),
    )


def histogram_window(
    period: HistogramPeriod,
    alignment: Alignment,
    now: datetime,
    tz: tzinfo | None = None,
) -> tuple[datetime, datetime]:
    """Start and end of the histogram window.

    Clock alignment snaps the end up to the next whole unit (hour for ``1d``,
    local midnight otherwise); relative alignment ends exactly at ``now``.
    Both bounds are returned in UTC so the window always spans
    ``layout.window`` of elapsed time, DST changes included.
    """
    layout = HISTOGRAM_LAYOUTS[period]
    if alignment == Alignment.RELATIVE:
        end = now.astimezone(UTC)
        return end - layout.window, end
    local_now = now.astimezone(tz)
    if layout.unit == timedelta(hours=1):
        floor = local_now.replace(minute=0, second=0, microsecond=0)
        end = floor.astimezone(UTC) + layout.unit
    else:
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = (midnight + layout.unit).astimezone(UTC)
    return end - layout.window, end


def histogram(
    records: Iterable[UsageRecord],
    *,
    period: HistogramPeriod = HistogramPeriod.DAY,
    alignment: Alignment = Alignment.CLOCK,
    now: datetime | None = None,
    flt: ReportFilter | None = None,
    prices: PriceTable,
    rate: CurrencyRate | None = None,
) -> Histogram:
    """Sum tokens and converted cost into fixed-width buckets over a recent window.

    Only the filter's project and tool apply; the window replaces its date range.
    """
    flt = flt or ReportFilter()
    rate = rate or CurrencyRate()
    now = now or datetime.now(UTC)
    layout = HISTOGRAM_LAYOUTS[period]
    start, end = histogram_window(period, alignment, now, flt.tz)

    buckets = [
        HistogramBucket(
            start=start + layout.width * index,
            end=start + layout.width * (index + 1),
            label=_bucket_label(period, (start + layout.width * index).astimezone(flt.tz), index),
        )
        for index in range(layout.bucket_count)
    ]

    scoped = ReportFilter(project=flt.project, tool=flt.tool, tz=flt.tz)
    unpriced: set[str] = set()
    for record in deduplicate(filter_records(records, scoped)):
        if record.timestamp < start or record.timestamp > end:
            continue
        index = min(int((record.timestamp - start) / layout.width), len(buckets) - 1)
        cost = record_cost(record, prices)
        if cost is None:
            unpriced.add(record.model)
            cost = 0.0
        bucket = buckets[index]
        bucket.tokens += record.total_tokens
        bucket.cost += rate.convert(cost)

    return Histogram(
        period=period,
        alignment=alignment,
        start=start,
        end=end,
        buckets=buckets,
        currency=rate.code,
        symbol=rate.symbol,
        unpriced_models=sorted(unpriced),
    )


def _bucket_label(period: HistogramPeriod, local_start: datetime, index: int) -> str:
    # a DST change moves UTC-spaced starts up to an hour off local midnight
    nearest = local_start + timedelta(hours=1)
    match period:
        case HistogramPeriod.DAY:
            return f"{local_start.hour:02d}" if local_start.minute == 0 else ""
        case HistogramPeriod.WEEK:
            return _WEEKDAYS[nearest.weekday()] if nearest.hour < 3 else ""
        case HistogramPeriod.MONTH:
            if nearest.day == 1 or index == 0:
                return f"{_MONTHS[nearest.month - 1]} {nearest.day}"
            return str(nearest.day)
