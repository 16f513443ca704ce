"""
Model registry: which models are billable, and at what rate.

The whole models_pricing table is cached in memory for a TTL. A requested
model that is not in the table falls back to the configured default.
"""

import asyncio
import time

from loguru import logger

from app.core.cache import Clock, TtlCache
from app.db.stores import PricingStore
from app.models.usage import ModelResolution, PricingRecord


class ModelRegistry:
    def __init__(
        self,
        store: PricingStore,
        default_model: str,
        ttl_seconds: float = 300.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.store = store
        self.default_model = default_model
        self._cache: TtlCache[dict[str, PricingRecord]] = TtlCache(ttl_seconds, clock)
        self._stale: dict[str, PricingRecord] = {}
        self._refresh_lock = asyncio.Lock()

    async def _table(self) -> dict[str, PricingRecord]:
        table = self._cache.get()
        if table is not None:
            return table

        async with self._refresh_lock:
            table = self._cache.get()
            if table is not None:
                return table
            try:
                records = await self.store.all()
            except Exception as e:
                # Keep serving the last good table rather than failing requests
                logger.error("[registry] pricing refresh failed: {}", e)
                return self._stale
            table = {r.model: r for r in records}
            self._cache.set(table)
            self._stale = table
            logger.info("[registry] cache refreshed: {} models, default={}", len(table), self.default_model)
            return table

    async def resolve(self, requested: str | None) -> ModelResolution:
        model = requested or self.default_model
        table = await self._table()

        if model in table:
            return ModelResolution(
                model=model, requested=requested, valid=True, is_fallback=False, pricing=table[model]
            )

        if model != self.default_model:
            logger.warning(
                "[registry] model {!r} not in registry, using default {!r}", model, self.default_model
            )

        default = table.get(self.default_model)
        if default is None:
            logger.error("[registry] default model {!r} has no pricing row", self.default_model)
        return ModelResolution(
            model=self.default_model,
            requested=requested,
            valid=default is not None,
            is_fallback=model != self.default_model,
            pricing=default,
        )

    async def pricing_for(self, model: str) -> PricingRecord | None:
        return (await self._table()).get(model)

    async def all_models(self) -> list[PricingRecord]:
        table = await self._table()
        return sorted(table.values(), key=lambda r: r.model)

    async def invalidate(self) -> None:
        """Drop the cached table and reload it now (call after pricing edits)."""
        self._cache.invalidate()
        await self._table()
