"""Pricing resolver: per-token price tables from public sources, cached on disk."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError
from result import Err, Ok, Result

from tokscan.config import Config
from tokscan.errors import PricingFetchError, UsageError
from tokscan.models.pricing import ModelPricing, PriceTable

logger = logging.getLogger(__name__)

LITELLM_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
)
OPENROUTER_URL = "https://api.openrouter.ai/api/v1/models"
LLMPRICES_URL = "https://www.llm-prices.com/current-v1.json"

_PER_MILLION = 1_000_000.0


def parse_litellm(document: Any) -> dict[str, ModelPricing]:
    """LiteLLM ``model_prices_and_context_window.json``: per-token floats."""
    prices: dict[str, ModelPricing] = {}
    if not isinstance(document, dict):
        return prices
    for model, entry in document.items():
        if not isinstance(entry, dict):
            continue
        input_cost = _float(entry.get("input_cost_per_token"))
        output_cost = _float(entry.get("output_cost_per_token"))
        if input_cost is None or output_cost is None:
            continue
        prices[model] = ModelPricing(
            input=input_cost,
            output=output_cost,
            cache_write=_float(entry.get("cache_creation_input_token_cost")) or 0.0,
            cache_read=_float(entry.get("cache_read_input_token_cost")) or 0.0,
        )
    return prices


def parse_openrouter(document: Any) -> dict[str, ModelPricing]:
    """OpenRouter ``/models``: per-token prices as decimal strings."""
    prices: dict[str, ModelPricing] = {}
    models = document.get("data") if isinstance(document, dict) else None
    if not isinstance(models, list):
        return prices
    for model in models:
        if not isinstance(model, dict) or not isinstance(model.get("id"), str):
            continue
        pricing = model.get("pricing")
        if not isinstance(pricing, dict):
            continue
        input_cost = _float(pricing.get("prompt"))
        output_cost = _float(pricing.get("completion"))
        if input_cost is None or output_cost is None or input_cost < 0 or output_cost < 0:
            continue
        prices[model["id"]] = ModelPricing(
            input=input_cost,
            output=output_cost,
            cache_write=_float(pricing.get("input_cache_write")) or 0.0,
            cache_read=_float(pricing.get("input_cache_read")) or 0.0,
        )
    return prices


def parse_llmprices(document: Any) -> dict[str, ModelPricing]:
    """llm-prices.com ``current-v1.json``: prices per million tokens."""
    prices: dict[str, ModelPricing] = {}
    entries = document.get("prices") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        return prices
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            continue
        input_cost = _float(entry.get("input"))
        output_cost = _float(entry.get("output"))
        if input_cost is None or output_cost is None:
            continue
        prices[entry["id"]] = ModelPricing(
            input=input_cost / _PER_MILLION,
            output=output_cost / _PER_MILLION,
            cache_read=(_float(entry.get("input_cached")) or 0.0) / _PER_MILLION,
        )
    return prices


PRICING_SOURCES: dict[str, tuple[str, Callable[[Any], dict[str, ModelPricing]]]] = {
    "litellm": (LITELLM_URL, parse_litellm),
    "openrouter": (OPENROUTER_URL, parse_openrouter),
    "llmprices": (LLMPRICES_URL, parse_llmprices),
}


class PricingResolver:
    """Resolves a price table: fresh cache, then network, then stale cache.

    Fetch failures degrade to the last cached table and finally to an empty
    table; only an offline run with nothing cached is an error.
    """

    def __init__(
        self,
        config: Config,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._timeout = config.http_timeout if timeout is None else timeout

    async def fetch(
        self, source_id: str | None = None, offline: bool = False
    ) -> Result[PriceTable, UsageError | PricingFetchError]:
        source = (source_id or self._config.pricing_source).strip().lower()
        if source not in PRICING_SOURCES:
            known = ", ".join(sorted(PRICING_SOURCES))
            return Err(UsageError(f"Unknown pricing source '{source}' (expected one of: {known})"))

        cache_path = self._config.pricing_cache_path(source)
        cached = await asyncio.to_thread(_load_table, cache_path)
        now = datetime.now(UTC)
        if cached is not None and (offline or cached.is_fresh(now)):
            if not cached.is_fresh(now):
                logger.warning("Using stale %s pricing from %s", source, cached.fetched_at)
            return Ok(cached)
        if offline:
            return Err(PricingFetchError(f"--offline: no valid pricing cache for '{source}'"))

        url, parser = PRICING_SOURCES[source]
        try:
            document = await self._download(url)
        except (httpx.HTTPError, ValueError) as exc:
            if cached is not None:
                logger.warning(
                    "Failed to fetch %s pricing (%s), using cache from %s",
                    source,
                    exc,
                    cached.fetched_at,
                )
                return Ok(cached)
            logger.warning("Failed to fetch %s pricing (%s), costs will be 0", source, exc)
            return Ok(PriceTable(source=source, fetched_at=now, prices={}))

        table = PriceTable(source=source, fetched_at=now, prices=parser(document))
        logger.info("Fetched %d %s model prices", len(table.prices), source)
        try:
            await asyncio.to_thread(_save_table, cache_path, table)
        except OSError as exc:
            logger.warning("Could not write pricing cache %s: %s", cache_path, exc)
        return Ok(table)

    async def _download(self, url: str) -> Any:
        async with httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=True, transport=self._transport
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()


def _load_table(path: Path) -> PriceTable | None:
    try:
        return PriceTable.model_validate_json(path.read_bytes())
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable pricing cache %s: %s", path, exc)
        return None


def _save_table(path: Path, table: PriceTable) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(table.model_dump_json(), encoding="utf-8")
    tmp_path.replace(path)


def _float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None
