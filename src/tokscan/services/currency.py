"""Currency resolver: USD exchange rates from frankfurter.dev, cached on disk."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

import httpx
from pydantic import ValidationError
from result import Err, Ok, Result

from tokscan.config import Config
from tokscan.errors import CurrencyFetchError
from tokscan.models.pricing import BASE_CURRENCY, CurrencyRate, ExchangeRateTable

logger = logging.getLogger(__name__)

FRANKFURTER_URL = "https://api.frankfurter.dev/v1/latest"

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CNY": "¥",
    "KRW": "₩",
    "INR": "₹",
    "BRL": "R$",
    "CHF": "CHF ",
    "CAD": "CA$",
    "AUD": "A$",
    "SEK": "kr ",
    "NOK": "kr ",
    "DKK": "kr ",
    "PLN": "zł",
    "CZK": "Kč ",
    "TRY": "₺",
    "THB": "฿",
    "MXN": "MX$",
    "ZAR": "R ",
}


def currency_symbol(code: str) -> str:
    """Display prefix for a currency; unknown codes print as ``"XXX "``."""
    code = code.upper()
    return CURRENCY_SYMBOLS.get(code, f"{code} ")


def base_rate() -> CurrencyRate:
    return CurrencyRate(code=BASE_CURRENCY, symbol=currency_symbol(BASE_CURRENCY), rate=1.0)


class CurrencyResolver:
    """Resolves a conversion rate: fresh cache, then network, then stale cache.

    ``Err`` means no rate is available at all; callers fall back to the base
    currency.
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

    async def resolve(
        self, code: str | None = None, offline: bool = False
    ) -> Result[CurrencyRate, CurrencyFetchError]:
        code = (code or self._config.currency).strip().upper()
        if code == BASE_CURRENCY:
            return Ok(base_rate())

        cache_path = self._config.exchange_cache_path
        cached = await asyncio.to_thread(_load_table, cache_path)
        now = datetime.now(UTC)
        if cached is not None and cached.is_fresh(now) and cached.rate_for(code) is not None:
            return Ok(_rate(code, cached))

        if not offline:
            try:
                table = await self._download(now)
            except (httpx.HTTPError, ValueError, ValidationError) as exc:
                logger.warning("Failed to fetch exchange rates: %s", exc)
            else:
                try:
                    await asyncio.to_thread(_save_table, cache_path, table)
                except OSError as exc:
                    logger.warning("Could not write exchange cache %s: %s", cache_path, exc)
                if table.rate_for(code) is not None:
                    return Ok(_rate(code, table))

        if cached is not None and cached.rate_for(code) is not None:
            logger.warning("Using stale exchange rate for %s from %s", code, cached.fetched_at)
            return Ok(_rate(code, cached))
        return Err(CurrencyFetchError(f"No exchange rate for {code}, falling back to USD"))

    async def _download(self, now: datetime) -> ExchangeRateTable:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(FRANKFURTER_URL, params={"base": BASE_CURRENCY})
            response.raise_for_status()
            payload = response.json()
        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise ValueError("exchange response has no rates")
        return ExchangeRateTable(
            base=BASE_CURRENCY,
            fetched_at=now,
            rates={
                str(key).upper(): float(value)
                for key, value in rates.items()
                if isinstance(value, int | float) and not isinstance(value, bool)
            },
        )


def _rate(code: str, table: ExchangeRateTable) -> CurrencyRate:
    return CurrencyRate(code=code, symbol=currency_symbol(code), rate=table.rate_for(code) or 1.0)


def _load_table(path: Path) -> ExchangeRateTable | None:
    try:
        return ExchangeRateTable.model_validate_json(path.read_bytes())
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable exchange cache %s: %s", path, exc)
        return None


def _save_table(path: Path, table: ExchangeRateTable) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(table.model_dump_json(), encoding="utf-8")
    tmp_path.replace(path)
