"""Refresh ``instance_pricing`` from the Pricing API for every catalogued type.

Requests are paced by the adapter's token bucket; at most
``MAX_CONCURRENT_TYPES`` instance types are in flight at once.
"""

from __future__ import annotations

import asyncio

from contracts.catalog import InstancePricing
from infra.logging_config import StructuredLogger
from services.aws.pricing import PricingAdapter

log = StructuredLogger(__name__)

MAX_CONCURRENT_TYPES = 8


class PricingScraper:
    def __init__(self, store, pricing: PricingAdapter, *, concurrency: int = MAX_CONCURRENT_TYPES) -> None:
        self._store = store
        self._pricing = pricing
        self._gate = asyncio.Semaphore(max(1, concurrency))

    async def _prices_for(self, instance_type: str) -> list[InstancePricing]:
        async with self._gate:
            entries = await self._pricing.get_prices(instance_type)
        return list(entries.values())

    async def collect_prices(self, instance_types: list[str]) -> list[InstancePricing]:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self._prices_for(t)) for t in instance_types]
        rows: list[InstancePricing] = []
        for task in tasks:
            rows.extend(task.result())
        return rows

    async def update_all_prices(self) -> int:
        """Upsert OnDemand and Reserved prices; returns the number of rows written."""
        instance_types = [row.instance_type for row in await self._store.list_instances()]
        rows = await self.collect_prices(instance_types)
        written = await self._store.upsert_prices(rows)
        log.info("pricing_updated", instance_types=len(instance_types), observations=len(rows), written=written)
        return written


__all__ = ["MAX_CONCURRENT_TYPES", "PricingScraper"]
