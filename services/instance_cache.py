"""Single-writer cache of the instance listing.

The snapshot is an immutable tuple replaced in one assignment, so readers
never see a partial list and need no lock. Writers serialise on an
``asyncio.Lock``. The cache is passed to the orchestrator explicitly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from contracts.resources import Ec2Instance


def order_instances(instances: Iterable[Ec2Instance]) -> tuple[Ec2Instance, ...]:
    """Running first, then by launch time ascending; ties keep listing order."""
    by_launch = sorted(instances, key=lambda inst: inst.launch_time)
    return tuple(sorted(by_launch, key=lambda inst: not inst.is_running))


class InstanceCache:
    def __init__(self) -> None:
        self._snapshot: tuple[Ec2Instance, ...] = ()
        self._write_lock = asyncio.Lock()
        self._generation = 0

    @property
    def snapshot(self) -> tuple[Ec2Instance, ...]:
        return self._snapshot

    @property
    def generation(self) -> int:
        """Number of completed refreshes."""
        return self._generation

    async def refresh(self, fetch: Callable[[], Awaitable[Iterable[Ec2Instance]]]) -> tuple[Ec2Instance, ...]:
        """Fetch, order and publish a new snapshot."""
        async with self._write_lock:
            snapshot = order_instances(await fetch())
            self._snapshot = snapshot
            self._generation += 1
            return snapshot


__all__ = ["InstanceCache", "order_instances"]
