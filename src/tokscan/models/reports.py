"""Report and histogram models."""

from __future__ import annotations

from datetime import date, datetime, tzinfo
from enum import StrEnum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from tokscan.errors import UsageError


class Grouping(StrEnum):
    """Selector used to build report buckets."""

    DAY = "day"
    MONTH = "month"
    SESSION = "session"
    MODEL = "model"

    @property
    def is_period(self) -> bool:
        return self in (Grouping.DAY, Grouping.MONTH)


class HistogramPeriod(StrEnum):
    DAY = "1d"
    WEEK = "1w"
    MONTH = "1m"


class Alignment(StrEnum):
    CLOCK = "clock"
    RELATIVE = "relative"


class ReportFilter(BaseModel):
    """Record filter: inclusive date range, project substring and tool."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    since: date | None = None
    until: date | None = None
    project: str = ""
    tool: str = ""
    tz: tzinfo | None = None

    def validate_range(self) -> None:
        """Reject an inverted range; it is never swapped."""
        if self.since is not None and self.until is not None and self.since > self.until:
            raise UsageError(
                f"Invalid date range: from {self.since.isoformat()} is after "
                f"to {self.until.isoformat()}"
            )


class ModelDetail(BaseModel):
    """Per-model sub-bucket inside a report bucket."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0
    record_count: int = 0


class ReportBucket(BaseModel):
    """Accumulated token counts and cost for one group key."""

    key: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0
    record_count: int = 0
    models: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    details: list[ModelDetail] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
        )


class Report(BaseModel):
    """A finished aggregation, ready for rendering."""

    grouping: Grouping
    buckets: list[ReportBucket] = Field(default_factory=list)
    total: ReportBucket = Field(default_factory=lambda: ReportBucket(key="TOTAL"))
    currency: str = "USD"
    symbol: str = "$"
    unpriced_models: list[str] = Field(default_factory=list)
    record_count: int = 0
    warnings: list[str] = Field(default_factory=list)
    generated_at: AwareDatetime | None = None


class HistogramBucket(BaseModel):
    start: AwareDatetime
    end: AwareDatetime
    label: str = ""
    tokens: int = 0
    cost: float = 0.0


class Histogram(BaseModel):
    """Fixed-width time buckets over a recent window."""

    period: HistogramPeriod
    alignment: Alignment
    start: AwareDatetime
    end: AwareDatetime
    buckets: list[HistogramBucket] = Field(default_factory=list)
    currency: str = "USD"
    symbol: str = "$"
    unpriced_models: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return sum(bucket.cost for bucket in self.buckets)

    def covers(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end
