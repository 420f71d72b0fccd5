"""Core entry point: scan, price, convert and aggregate in one call."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from result import Err, Ok, Result

from tokscan.data.scanner import Scanner
from tokscan.errors import PricingFetchError, UsageError
from tokscan.models.pricing import CurrencyRate, PriceTable
from tokscan.models.records import UsageRecord
from tokscan.models.reports import (
    Alignment,
    Grouping,
    Histogram,
    HistogramPeriod,
    Report,
    ReportFilter,
)
from tokscan.models.scanning import ScanResult
from tokscan.services.aggregation import aggregate, histogram
from tokscan.services.currency import base_rate

if TYPE_CHECKING:
    from tokscan.config import Config
    from tokscan.data.protocols import CacheStore, ProgressCallback
    from tokscan.data.providers import Provider
    from tokscan.services.protocols import CurrencyResolverProtocol, PricingResolverProtocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportRequest:
    """Everything one report or histogram run needs besides the cache."""

    filter: ReportFilter = field(default_factory=ReportFilter)
    grouping: Grouping = Grouping.DAY
    breakdown: bool = False
    pricing_source: str | None = None
    currency: str | None = None
    offline: bool = False
    force_rescan: bool = False
    period: HistogramPeriod = HistogramPeriod.MONTH
    alignment: Alignment = Alignment.CLOCK
    now: datetime | None = None
    watch_interval: float | None = None
    watch_full: bool = False


@dataclass
class _Prepared:
    records: list[UsageRecord]
    prices: PriceTable
    rate: CurrencyRate
    warnings: list[str]


class UsageEngine:
    """Scan -> Normalize -> Cache -> Aggregate over one explicit store handle."""

    def __init__(
        self,
        store: CacheStore,
        config: Config,
        pricing: PricingResolverProtocol,
        currency: CurrencyResolverProtocol,
        providers: Sequence[Provider] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._pricing = pricing
        self._currency = currency
        self._scanner = Scanner(store, config, providers)

    @property
    def store(self) -> CacheStore:
        return self._store

    async def scan(
        self, progress_callback: ProgressCallback | None = None, force: bool = False
    ) -> ScanResult:
        return await self._scanner.scan(progress_callback=progress_callback, force=force)

    async def records(self) -> list[UsageRecord]:
        """Every cached record, in store order."""
        return [record async for record in self._store.all_records()]

    async def commit(self) -> None:
        await self._store.commit()

    async def report(
        self,
        request: ReportRequest,
        progress_callback: ProgressCallback | None = None,
    ) -> Result[Report, UsageError | PricingFetchError]:
        """Bring the cache up to date and build a grouped report.

        Returns:
            Ok with the report, or Err for an invalid filter or for offline
            pricing with nothing cached.
        """
        try:
            request.filter.validate_range()
        except UsageError as exc:
            return Err(exc)

        prepared = await self._prepare(request, progress_callback)
        if isinstance(prepared, Err):
            return Err(prepared.err_value)
        context = prepared.ok_value

        report = aggregate(
            context.records,
            grouping=request.grouping,
            flt=request.filter,
            breakdown=request.breakdown,
            prices=context.prices,
            rate=context.rate,
        )
        warnings = [*context.warnings, *_unpriced_warning(report.unpriced_models)]
        return Ok(
            report.model_copy(
                update={"warnings": warnings, "generated_at": request.now or datetime.now(UTC)}
            )
        )

    async def histogram(
        self,
        request: ReportRequest,
        progress_callback: ProgressCallback | None = None,
    ) -> Result[Histogram, UsageError | PricingFetchError]:
        """Bring the cache up to date and bucket the recent window."""
        prepared = await self._prepare(request, progress_callback)
        if isinstance(prepared, Err):
            return Err(prepared.err_value)
        context = prepared.ok_value

        result = histogram(
            context.records,
            period=request.period,
            alignment=request.alignment,
            now=request.now,
            flt=request.filter,
            prices=context.prices,
            rate=context.rate,
        )
        warnings = [*context.warnings, *_unpriced_warning(result.unpriced_models)]
        return Ok(result.model_copy(update={"warnings": warnings}))

    async def _prepare(
        self,
        request: ReportRequest,
        progress_callback: ProgressCallback | None,
    ) -> Result[_Prepared, UsageError | PricingFetchError]:
        scan = await self.scan(progress_callback, force=request.force_rescan)
        warnings = list(scan.warnings)

        prices = await self._pricing.fetch(request.pricing_source, request.offline)
        if isinstance(prices, Err):
            return Err(prices.err_value)
        table = prices.ok_value
        if not table.prices:
            warnings.append(f"No {table.source} pricing available, costs are 0")
        elif not table.is_fresh():
            warnings.append(
                f"Using stale {table.source} pricing from {table.fetched_at:%Y-%m-%d %H:%M}"
            )

        rate = await self._currency.resolve(request.currency, request.offline)
        if isinstance(rate, Err):
            logger.warning("%s", rate.err_value)
            warnings.append(str(rate.err_value))
            currency_rate = base_rate()
        else:
            currency_rate = rate.ok_value

        records = await self.records()
        logger.debug("Loaded %d cached records after scan (%s)", len(records), scan)
        return Ok(_Prepared(records=records, prices=table, rate=currency_rate, warnings=warnings))


def _unpriced_warning(models: list[str]) -> list[str]:
    if not models:
        return []
    return [f"No pricing for model(s): {', '.join(models)}; counted as 0"]
