"""Pydantic models for tokscan."""

from tokscan.models.pricing import (
    BASE_CURRENCY,
    CurrencyRate,
    ExchangeRateTable,
    ModelPricing,
    PriceTable,
)
from tokscan.models.records import FileFingerprint, UsageRecord
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
from tokscan.models.scanning import ScanResult

__all__ = [
    "Alignment",
    "BASE_CURRENCY",
    "CurrencyRate",
    "ExchangeRateTable",
    "FileFingerprint",
    "Grouping",
    "Histogram",
    "HistogramBucket",
    "HistogramPeriod",
    "ModelDetail",
    "ModelPricing",
    "PriceTable",
    "Report",
    "ReportBucket",
    "ReportFilter",
    "ScanResult",
    "UsageRecord",
]
