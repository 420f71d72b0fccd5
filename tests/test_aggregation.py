"""Tests for aggregation, cost and histogram bucketing."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from conftest import SONNET, make_record
from tokscan.errors import UsageError
from tokscan.models.pricing import CurrencyRate, ModelPricing, PriceTable
from tokscan.models.reports import Alignment, Grouping, HistogramPeriod, ReportFilter
from tokscan.services.aggregation import (
    aggregate,
    deduplicate,
    filter_records,
    histogram,
    histogram_window,
)
from tokscan.services.cost import record_cost

UTC_FILTER = ReportFilter(tz=UTC)


def _day(day: int, hour: int = 12) -> datetime:
    return datetime(2026, 2, day, hour, tzinfo=UTC)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        pytest.skip(f"time zone {name} not installed")


@pytest.fixture
def empty_prices() -> PriceTable:
    return PriceTable(source="litellm", fetched_at=datetime.now(UTC))


class TestAggregate:
    def test_daily_grouping(self, empty_prices: PriceTable) -> None:
        records = [
            make_record(_day(2), message_id="r3", cost=7.0),
            make_record(_day(1), message_id="r1", cost=10.0),
            make_record(_day(1, 18), message_id="r2", cost=5.0),
        ]
        report = aggregate(records, flt=UTC_FILTER, prices=empty_prices)

        assert [(b.key, b.cost) for b in report.buckets] == [
            ("2026-02-01", 15.0),
            ("2026-02-02", 7.0),
        ]
        assert report.total.key == "TOTAL"
        assert report.total.cost == 22.0
        assert report.record_count == 3

    def test_monthly_grouping(self, empty_prices: PriceTable) -> None:
        records = [
            make_record(datetime(2026, 3, 5, tzinfo=UTC), message_id="a", cost=1.0),
            make_record(_day(1), message_id="b", cost=2.0),
        ]
        report = aggregate(records, grouping=Grouping.MONTH, flt=UTC_FILTER, prices=empty_prices)
        assert [b.key for b in report.buckets] == ["2026-02", "2026-03"]

    def test_model_grouping_orders_by_cost(self, empty_prices: PriceTable) -> None:
        records = [
            make_record(_day(1), model="cheap", message_id="a", cost=1.0),
            make_record(_day(1), model="pricey", message_id="b", cost=9.0),
            make_record(_day(2), model="also-cheap", message_id="c", cost=1.0),
        ]
        report = aggregate(records, grouping=Grouping.MODEL, prices=empty_prices)
        assert [b.key for b in report.buckets] == ["pricey", "also-cheap", "cheap"]

    def test_session_grouping(self, empty_prices: PriceTable) -> None:
        records = [
            make_record(_day(1), session_id="s1", message_id="a", cost=1.0),
            make_record(_day(2), session_id="s2", message_id="b", cost=3.0),
            make_record(_day(3), session_id="s1", message_id="c", cost=1.0),
        ]
        report = aggregate(records, grouping=Grouping.SESSION, prices=empty_prices)
        assert [(b.key, b.cost) for b in report.buckets] == [("s2", 3.0), ("s1", 2.0)]

    def test_priced_tokens_and_breakdown(self, price_table: PriceTable) -> None:
        records = [
            make_record(
                _day(1),
                model=SONNET,
                message_id="a",
                input_tokens=1_000_000,
                output_tokens=100_000,
            ),
            make_record(_day(1), model="gpt-5", message_id="b", input_tokens=1_000_000),
        ]
        report = aggregate(records, flt=UTC_FILTER, breakdown=True, prices=price_table)

        bucket = report.buckets[0]
        assert bucket.cost == pytest.approx(3.0 + 1.5 + 1.25)
        assert [detail.model for detail in bucket.details] == [SONNET, "gpt-5"]
        assert bucket.details[0].cost == pytest.approx(4.5)
        assert report.total.details[0].model == SONNET
        assert bucket.models == sorted([SONNET, "gpt-5"])
        assert bucket.tools == ["claude"]

    def test_unpriced_models_cost_zero(self, price_table: PriceTable) -> None:
        records = [make_record(_day(1), model="mystery-model", message_id="a", input_tokens=50)]
        report = aggregate(records, prices=price_table)
        assert report.total.cost == 0.0
        assert report.unpriced_models == ["mystery-model"]
        assert report.total.input_tokens == 50

    def test_currency_conversion(self, empty_prices: PriceTable) -> None:
        records = [make_record(_day(1), message_id="a", cost=10.0)]
        rate = CurrencyRate(code="EUR", symbol="€", rate=0.9)

        converted = aggregate(records, flt=UTC_FILTER, prices=empty_prices, rate=rate)
        unchanged = aggregate(records, flt=UTC_FILTER, prices=empty_prices)

        assert converted.total.cost == pytest.approx(9.0)
        assert (converted.currency, converted.symbol) == ("EUR", "€")
        assert unchanged.total.cost == pytest.approx(10.0)
        assert unchanged.currency == "USD"

    def test_inverted_range_is_rejected(self, empty_prices: PriceTable) -> None:
        flt = ReportFilter(since=date(2026, 2, 10), until=date(2026, 2, 1))
        with pytest.raises(UsageError, match="from 2026-02-10 is after to 2026-02-01"):
            aggregate([], flt=flt, prices=empty_prices)

    def test_empty_input_is_a_zero_report(self, empty_prices: PriceTable) -> None:
        report = aggregate([], prices=empty_prices)
        assert report.buckets == []
        assert report.total.cost == 0.0
        assert report.total.total_tokens == 0


class TestFilterAndDedup:
    def test_date_range_uses_filter_timezone(self) -> None:
        late = make_record(datetime(2026, 2, 1, 23, 30, tzinfo=UTC), message_id="late")
        plus_two = timezone(timedelta(hours=2))
        day = date(2026, 2, 1)

        in_utc = filter_records([late], ReportFilter(since=day, until=day, tz=UTC))
        in_plus_two = filter_records([late], ReportFilter(since=day, until=day, tz=plus_two))
        assert in_utc == [late]
        assert in_plus_two == []

    def test_project_and_tool(self) -> None:
        records = [
            make_record(_day(1), project="WebShop", tool="claude", message_id="a"),
            make_record(_day(1), project="backend", tool="codex", message_id="b"),
        ]
        assert [r.message_id for r in filter_records(records, ReportFilter(project="shop"))] == [
            "a"
        ]
        assert [r.message_id for r in filter_records(records, ReportFilter(tool="CODEX"))] == ["b"]

    def test_deduplicate(self) -> None:
        records = [
            make_record(_day(1), message_id="m1", request_id="r1", cost=1.0),
            make_record(_day(1), message_id="m1", request_id="r1", cost=1.0),
            make_record(_day(1), message_id="m1", request_id="r2", cost=1.0),
            make_record(_day(1), tool="codex", message_id="m1", request_id="r1", cost=1.0),
            make_record(_day(1), cost=1.0),
            make_record(_day(1), cost=1.0),
        ]
        assert len(deduplicate(records)) == 5


class TestCost:
    def test_precomputed_cost_wins(self, price_table: PriceTable) -> None:
        record = make_record(_day(1), input_tokens=1_000_000, cost=0.5)
        assert record_cost(record, price_table) == 0.5

    def test_model_alias_lookup(self) -> None:
        table = PriceTable(
            source="litellm",
            fetched_at=datetime.now(UTC),
            prices={"claude-sonnet-4-5": ModelPricing(input=1e-6, output=2e-6)},
        )
        for model in (
            "claude-sonnet-4-5-20250929",
            "anthropic/claude-sonnet-4-5",
            "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        ):
            record = make_record(_day(1), model=model, input_tokens=1000)
            assert record_cost(record, table) == pytest.approx(0.001)


class TestHistogram:
    @pytest.mark.parametrize("hour", [0, 7, 13, 23])
    @pytest.mark.parametrize("minute", [0, 1, 59])
    def test_clock_day_has_48_aligned_buckets(
        self, hour: int, minute: int, empty_prices: PriceTable
    ) -> None:
        now = datetime(2026, 2, 10, hour, minute, 30, tzinfo=UTC)
        result = histogram(
            [], period=HistogramPeriod.DAY, now=now, flt=UTC_FILTER, prices=empty_prices
        )

        assert len(result.buckets) == 48
        assert result.end == now.replace(minute=0, second=0) + timedelta(hours=1)
        assert result.end - result.start == timedelta(hours=24)
        assert result.buckets[0].start == result.start
        assert result.buckets[-1].end == result.end
        assert result.covers(now)

    def test_relative_day_spans_exactly_24h(self, empty_prices: PriceTable) -> None:
        now = datetime(2026, 2, 10, 13, 17, 42, tzinfo=UTC)
        result = histogram(
            [],
            period=HistogramPeriod.DAY,
            alignment=Alignment.RELATIVE,
            now=now,
            prices=empty_prices,
        )
        assert (result.start, result.end) == (now - timedelta(hours=24), now)
        assert len(result.buckets) == 48

    def test_records_land_in_one_bucket(self, empty_prices: PriceTable) -> None:
        now = datetime(2026, 2, 10, 13, 17, tzinfo=UTC)
        start = now - timedelta(hours=24)
        records = [
            make_record(start, message_id="first", input_tokens=1, cost=1.0),
            make_record(start + timedelta(minutes=45), message_id="second", input_tokens=2),
            make_record(now, message_id="at-now", input_tokens=4, cost=2.0),
            make_record(start - timedelta(seconds=1), message_id="too-old", input_tokens=8),
        ]
        result = histogram(
            records,
            period=HistogramPeriod.DAY,
            alignment=Alignment.RELATIVE,
            now=now,
            prices=empty_prices,
        )
        assert result.buckets[0].tokens == 1
        assert result.buckets[1].tokens == 2
        assert result.buckets[-1].tokens == 4
        assert sum(bucket.tokens for bucket in result.buckets) == 7
        assert result.total_cost == pytest.approx(3.0)

    def test_week_and_month_windows(self) -> None:
        now = datetime(2026, 2, 10, 13, 17, tzinfo=UTC)
        week = histogram_window(HistogramPeriod.WEEK, Alignment.CLOCK, now, UTC)
        month = histogram_window(HistogramPeriod.MONTH, Alignment.CLOCK, now, UTC)
        assert week == (datetime(2026, 2, 4, tzinfo=UTC), datetime(2026, 2, 11, tzinfo=UTC))
        assert month == (datetime(2026, 1, 12, tzinfo=UTC), datetime(2026, 2, 11, tzinfo=UTC))

    def test_labels(self, empty_prices: PriceTable) -> None:
        now = datetime(2026, 2, 10, 13, 17, tzinfo=UTC)
        day = histogram([], period=HistogramPeriod.DAY, now=now, flt=UTC_FILTER, prices=empty_prices)
        week = histogram(
            [], period=HistogramPeriod.WEEK, now=now, flt=UTC_FILTER, prices=empty_prices
        )
        month = histogram(
            [], period=HistogramPeriod.MONTH, now=now, flt=UTC_FILTER, prices=empty_prices
        )

        assert [bucket.label for bucket in day.buckets[:3]] == ["14", "", "15"]
        assert len(week.buckets) == 28
        assert week.buckets[0].label == "Wed"
        assert week.buckets[1].label == ""
        assert len(month.buckets) == 30
        assert month.buckets[0].label == "Jan 12"
        assert month.buckets[1].label == "13"
        assert month.buckets[20].label == "Feb 1"

    def test_project_filter_applies_but_not_dates(self, empty_prices: PriceTable) -> None:
        now = datetime(2026, 2, 10, 13, 17, tzinfo=UTC)
        records = [
            make_record(now - timedelta(hours=1), project="keep", message_id="a", input_tokens=5),
            make_record(now - timedelta(hours=1), project="drop", message_id="b", input_tokens=9),
        ]
        flt = ReportFilter(since=date(2020, 1, 1), until=date(2020, 1, 2), project="keep", tz=UTC)
        result = histogram(
            records, period=HistogramPeriod.DAY, now=now, flt=flt, prices=empty_prices
        )
        assert sum(bucket.tokens for bucket in result.buckets) == 5

    @pytest.mark.parametrize(
        ("period", "now"),
        [
            (HistogramPeriod.DAY, datetime(2026, 3, 8, 12, 20)),
            (HistogramPeriod.WEEK, datetime(2026, 3, 10, 9, 0)),
            (HistogramPeriod.WEEK, datetime(2026, 11, 3, 9, 0)),
            (HistogramPeriod.MONTH, datetime(2026, 3, 20, 9, 0)),
        ],
    )
    def test_buckets_stay_even_across_dst(
        self, period: HistogramPeriod, now: datetime, empty_prices: PriceTable
    ) -> None:
        new_york = _zone("America/New_York")
        flt = ReportFilter(tz=new_york)
        now = now.replace(tzinfo=new_york)
        window = histogram([], period=period, now=now, flt=flt, prices=empty_prices)
        width = window.buckets[0].end - window.buckets[0].start
        records = [
            make_record(bucket.start + timedelta(minutes=1), message_id=str(i), input_tokens=1)
            for i, bucket in enumerate(window.buckets)
        ]

        result = histogram(records, period=period, now=now, flt=flt, prices=empty_prices)

        assert result.end.astimezone(UTC) - result.start.astimezone(UTC) == {
            HistogramPeriod.DAY: timedelta(hours=24),
            HistogramPeriod.WEEK: timedelta(days=7),
            HistogramPeriod.MONTH: timedelta(days=30),
        }[period]
        for bucket, following in zip(result.buckets, result.buckets[1:], strict=False):
            assert bucket.end == following.start
            assert bucket.end - bucket.start == width
        assert [bucket.tokens for bucket in result.buckets] == [1] * len(result.buckets)

    def test_labels_follow_local_days_across_dst(self, empty_prices: PriceTable) -> None:
        new_york = _zone("America/New_York")
        now = datetime(2026, 3, 10, 9, 0, tzinfo=new_york)
        flt = ReportFilter(tz=new_york)

        week = histogram([], period=HistogramPeriod.WEEK, now=now, flt=flt, prices=empty_prices)
        month = histogram(
            [], period=HistogramPeriod.MONTH, now=now, flt=flt, prices=empty_prices
        )

        assert [bucket.label for bucket in week.buckets if bucket.label] == [
            "Wed", "Thu", "Fri", "Sat", "Sun", "Mon", "Tue"
        ]
        assert month.buckets[-1].label == "10"
        assert month.buckets[-3].label == "8"
        assert month.buckets[0].label == "Feb 9"
