"""Service container with DI wiring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from tokscan.data.protocols import CacheStore
from tokscan.data.store import open_store
from tokscan.services.currency import CurrencyResolver
from tokscan.services.engine import UsageEngine
from tokscan.services.pricing import PricingResolver

if TYPE_CHECKING:
    from collections.abc import Sequence

    import httpx

    from tokscan.config import Config
    from tokscan.data.providers import Provider


@dataclass
class ServiceContainer:
    """Holds the store, resolvers and engine. Built once per run."""

    config: Config
    store: CacheStore
    pricing: PricingResolver
    currency: CurrencyResolver
    engine: UsageEngine

    @classmethod
    async def create(
        cls,
        config: Config,
        *,
        providers: Sequence[Provider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ServiceContainer:
        """Async factory that opens the configured store and wires the engine."""
        store = open_store(config)
        await store.__aenter__()

        pricing = PricingResolver(config, transport=transport)
        currency = CurrencyResolver(config, transport=transport)
        engine = UsageEngine(store, config, pricing, currency, providers)

        return cls(
            config=config,
            store=store,
            pricing=pricing,
            currency=currency,
            engine=engine,
        )

    async def close(self) -> None:
        """Persist pending cache writes and release the store."""
        await self.store.__aexit__(None, None, None)
