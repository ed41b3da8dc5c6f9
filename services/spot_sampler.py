"""Recent spot prices for a set of instance types.

``sample`` returns the last observed Linux/UNIX price per type over the
adapter's lookback window. ``record`` also persists the observations as
``spot`` rows so the price view can fall back on them.
"""

from __future__ import annotations

from collections.abc import Sequence

from contracts.catalog import PRICE_SPOT, InstancePricing
from services.aws._common import now_utc
from services.aws.ec2 import Ec2Adapter


class SpotSampler:
    def __init__(self, ec2: Ec2Adapter, store=None) -> None:
        self._ec2 = ec2
        self._store = store

    async def sample(self, instance_types: Sequence[str] = ()) -> dict[str, float]:
        return await self._ec2.spot_price_history(list(instance_types))

    async def record(self, instance_types: Sequence[str] = ()) -> dict[str, float]:
        prices = await self.sample(instance_types)
        if self._store is not None and prices:
            observed = now_utc()
            await self._store.upsert_prices(
                InstancePricing(instance_type=t, price=p, price_type=PRICE_SPOT, price_timestamp=observed)
                for t, p in sorted(prices.items())
            )
        return prices


__all__ = ["SpotSampler"]
