"""Tests for tagging spot instances once their request is fulfilled."""

from __future__ import annotations

import asyncio

from contracts.resources import SpotInstanceRequest
from services.tag_propagation import propagate_spot_tags
from tests.aws_mocks import no_sleep


def _request(instance_id: str | None) -> SpotInstanceRequest:
    return SpotInstanceRequest(
        id="sir-1",
        price=0.1,
        imageid="ami-1",
        instance_type="m5.large",
        spot_type="one-time",
        status="fulfilled" if instance_id else "pending-fulfillment",
        instance_id=instance_id,
    )


def test_tags_applied_once_instance_is_bound() -> None:
    listings = iter([[_request(None)], [_request(None)], [_request("i-9")]])
    tagged: list[tuple[str, dict[str, str]]] = []

    async def _list():
        return next(listings)

    async def _tag(instance_id: str, tags) -> None:
        tagged.append((instance_id, dict(tags)))

    result = asyncio.run(
        propagate_spot_tags(["sir-1"], {"Name": "worker"}, list_spot_requests=_list, create_tags=_tag, sleep=no_sleep)
    )
    assert result == {"sir-1": "i-9"}
    assert tagged == [("i-9", {"Name": "worker"})]


def test_gives_up_silently_after_attempts() -> None:
    polls = {"n": 0}

    async def _list():
        polls["n"] += 1
        return [_request(None)]

    async def _tag(instance_id: str, tags) -> None:
        raise AssertionError("must not tag")

    result = asyncio.run(
        propagate_spot_tags(
            ["sir-1"], {"Name": "w"}, list_spot_requests=_list, create_tags=_tag, attempts=3, sleep=no_sleep
        )
    )
    assert result == {}
    assert polls["n"] == 3


def test_no_tags_means_no_polling() -> None:
    async def _list():
        raise AssertionError("must not poll")

    async def _tag(instance_id: str, tags) -> None:
        raise AssertionError("must not tag")

    assert asyncio.run(propagate_spot_tags(["sir-1"], {}, list_spot_requests=_list, create_tags=_tag)) == {}
