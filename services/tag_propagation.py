"""Tag spot-launched instances once their bound instance id appears.

A spot request is accepted before the instance exists, so the caller's tags
cannot be applied at request time. ``propagate_spot_tags`` polls the spot
request listing and tags the instance on first sighting. It gives up
silently after ``attempts`` polls; the operator retries by hand.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence

from contracts.resources import SpotInstanceRequest
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

POLL_ATTEMPTS = 20
POLL_INTERVAL_SECONDS = 5.0


async def propagate_spot_tags(
    request_ids: Sequence[str],
    tags: Mapping[str, str],
    *,
    list_spot_requests: Callable[[], Awaitable[Sequence[SpotInstanceRequest]]],
    create_tags: Callable[[str, Mapping[str, str]], Awaitable[None]],
    attempts: int = POLL_ATTEMPTS,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[str, str]:
    """Return ``{request_id: instance_id}`` for every request that got tagged."""
    tagged: dict[str, str] = {}
    if not tags:
        return tagged
    for request_id in request_ids:
        for attempt in range(attempts):
            bound = {req.id: req.instance_id for req in await list_spot_requests()}
            instance_id = bound.get(request_id)
            if instance_id:
                await create_tags(instance_id, tags)
                tagged[request_id] = instance_id
                log.info("spot_tag_applied", request_id=request_id, instance_id=instance_id, attempt=attempt + 1)
                break
            if attempt + 1 < attempts:
                await sleep(interval)
        else:
            log.debug("spot_tag_gave_up", request_id=request_id, attempts=attempts)
    return tagged


__all__ = ["POLL_ATTEMPTS", "POLL_INTERVAL_SECONDS", "propagate_spot_tags"]
