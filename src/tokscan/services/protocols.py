"""Protocol definitions for services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from result import Result

from tokscan.errors import CurrencyFetchError, PricingFetchError, UsageError
from tokscan.models.pricing import CurrencyRate, PriceTable
from tokscan.models.reports import Histogram, Report

if TYPE_CHECKING:
    from tokscan.services.engine import ReportRequest


class PricingResolverProtocol(Protocol):
    """Interface for price table lookup."""

    async def fetch(
        self, source_id: str | None = None, offline: bool = False
    ) -> Result[PriceTable, UsageError | PricingFetchError]: ...


class CurrencyResolverProtocol(Protocol):
    """Interface for exchange rate lookup."""

    async def resolve(
        self, code: str | None = None, offline: bool = False
    ) -> Result[CurrencyRate, CurrencyFetchError]: ...


class ReportEngineProtocol(Protocol):
    """Interface the live monitor drives once per cycle."""

    async def report(
        self, request: ReportRequest
    ) -> Result[Report, UsageError | PricingFetchError]: ...

    async def histogram(
        self, request: ReportRequest
    ) -> Result[Histogram, UsageError | PricingFetchError]: ...

    async def commit(self) -> None: ...
