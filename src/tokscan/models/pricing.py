"""Pricing and exchange-rate models."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from pydantic import AwareDatetime, BaseModel, Field, PrivateAttr

PRICE_TABLE_TTL = timedelta(hours=24)
EXCHANGE_TABLE_TTL = timedelta(days=7)
BASE_CURRENCY = "USD"

_PROVIDER_PREFIXES = (
    "us.anthropic.",
    "eu.anthropic.",
    "au.anthropic.",
    "apac.anthropic.",
    "global.anthropic.",
    "anthropic.",
    "anthropic/",
    "openai/",
    "google/",
    "gemini/",
    "vertex_ai/",
)
_DATE_SUFFIX = re.compile(r"-\d{8}$")


class ModelPricing(BaseModel):
    """Per-token prices for one model, in the base currency."""

    input: float = 0.0
    output: float = 0.0
    cache_write: float = 0.0
    cache_read: float = 0.0


class PriceTable(BaseModel):
    """Model id -> per-token prices, tagged with where and when it came from."""

    source: str
    fetched_at: AwareDatetime
    prices: dict[str, ModelPricing] = Field(default_factory=dict)

    _index: dict[str, str] | None = PrivateAttr(default=None)
    _resolved: dict[str, str | None] = PrivateAttr(default_factory=dict)

    def is_fresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return now - self.fetched_at < PRICE_TABLE_TTL

    def lookup(self, model: str) -> ModelPricing | None:
        """Find prices for a model id, tolerating provider spelling differences.

        Tries an exact case-insensitive match, then normalized aliases, then
        substring matches (longest key contained in the model id first).
        """
        key = self._resolve(model)
        return self.prices[key] if key is not None else None

    def _resolve(self, model: str) -> str | None:
        if model in self._resolved:
            return self._resolved[model]

        index = self._key_index()
        found: str | None = None
        for candidate in model_aliases(model):
            if candidate in index:
                found = index[candidate]
                break

        if found is None:
            normalized = normalize_model_id(model)
            if normalized:
                contained = [k for k in index if len(k) > 2 and k in normalized]
                if contained:
                    found = index[max(contained, key=lambda k: (len(k), k))]
                else:
                    containing = [k for k in index if normalized in k]
                    if containing:
                        found = index[min(containing, key=lambda k: (len(k), k))]

        self._resolved[model] = found
        return found

    def _key_index(self) -> dict[str, str]:
        if self._index is None:
            index: dict[str, str] = {}
            for key in sorted(self.prices):
                index.setdefault(key.lower(), key)
            for key in sorted(self.prices):
                for alias in model_aliases(key):
                    index.setdefault(alias, key)
            self._index = index
        return self._index


class CurrencyRate(BaseModel):
    """Conversion from the base currency into one target currency."""

    code: str = BASE_CURRENCY
    symbol: str = "$"
    rate: float = 1.0

    def convert(self, amount: float) -> float:
        return amount * self.rate

    def format(self, amount: float | None) -> str:
        if amount is None:
            return "N/A"
        return f"{self.symbol}{self.convert(amount):.2f}"


class ExchangeRateTable(BaseModel):
    """Currency code -> rate relative to the base currency."""

    base: str = BASE_CURRENCY
    fetched_at: AwareDatetime
    rates: dict[str, float] = Field(default_factory=dict)

    def is_fresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return now - self.fetched_at < EXCHANGE_TABLE_TTL

    def rate_for(self, code: str) -> float | None:
        code = code.upper()
        if code == self.base:
            return 1.0
        return self.rates.get(code)


def normalize_model_id(model: str) -> str:
    """Lowercase and strip provider prefixes and version/date suffixes."""
    value = model.strip().lower()
    for prefix in _PROVIDER_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix) :]
            break
    if value.startswith("bedrock/"):
        value = value.rsplit("/", 1)[-1]
    if "/" in value:
        value = value.rsplit("/", 1)[-1]
    value = value.removesuffix(":0").removesuffix("-v1")
    return _DATE_SUFFIX.sub("", value)


def model_aliases(model: str) -> list[str]:
    """Candidate lookup keys for a model id, most specific first."""
    lowered = model.strip().lower()
    aliases = [lowered]
    stripped = lowered
    for prefix in _PROVIDER_PREFIXES:
        if stripped.startswith(prefix):
            stripped = stripped[len(prefix) :]
            break
    if "/" in stripped:
        stripped = stripped.rsplit("/", 1)[-1]
    for variant in (
        stripped,
        stripped.removesuffix(":0").removesuffix("-v1"),
        normalize_model_id(lowered),
    ):
        if variant and variant not in aliases:
            aliases.append(variant)
    return aliases
