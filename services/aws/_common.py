"""Shared helpers for the Cloud Adapter modules.

Adapters hold synchronous boto3 clients. Every SDK call goes through
``call`` or ``collect``, which run it on a worker thread and wrap botocore
failures in ``AdapterError`` carrying the provider operation name.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from contracts.errors import AdapterError

_SDK_ERRORS: Tuple[type[Exception], ...] = (ClientError, BotoCoreError)


def utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` converted to timezone-aware UTC (or None)."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def now_utc() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(timezone.utc)


def safe_float(value: Any, default: float = 0.0) -> float:
    """Best-effort float conversion."""

    try:
        if value is None:
            return float(default)
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def safe_int(value: Any, default: int = 0) -> int:
    try:
        if value is None:
            return int(default)
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def tag_map(tags: Any) -> dict[str, str]:
    """``[{"Key": k, "Value": v}, ...]`` -> ``{k: v}``.

    Entries missing either the key or the value are dropped. Case is kept:
    ``Name`` is significant for alias resolution.
    """

    out: dict[str, str] = {}
    if not tags:
        return out
    if isinstance(tags, Mapping):
        return {str(k): str(v) for k, v in tags.items() if k is not None and v is not None}
    for item in tags:
        if not isinstance(item, Mapping):
            continue
        key = item.get("Key")
        value = item.get("Value")
        if key is None or value is None:
            continue
        out[str(key)] = str(value)
    return out


def tag_list(tags: Mapping[str, str]) -> List[Dict[str, str]]:
    """Inverse of ``tag_map`` for CreateTags / TagSpecifications."""

    return [{"Key": str(k), "Value": str(v)} for k, v in tags.items()]


def paginate_items(
    client: Any,
    operation: str,
    result_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    request_token_key: str = "NextToken",
    response_token_keys: Sequence[str] = ("NextToken",),
    use_paginator: bool = True,
) -> Iterator[Dict[str, Any]]:
    """Yield dict items from a boto3 paginator when available, else a token loop.

    The token loop also covers operations without a paginator and test
    doubles that only implement the raw call.
    """
    params = dict(params or {})

    if use_paginator and hasattr(client, "get_paginator"):
        can_paginate = getattr(client, "can_paginate", None)
        if can_paginate is None or can_paginate(operation):
            paginator = client.get_paginator(operation)
            for page in paginator.paginate(**params):
                for item in page.get(result_key, []) or []:
                    if isinstance(item, dict):
                        yield item
            return

    call = getattr(client, operation, None)
    if call is None:
        raise AttributeError(f"client has no operation {operation}")

    next_token: Optional[str] = None
    while True:
        req = dict(params)
        if next_token:
            req[request_token_key] = next_token
        resp = call(**req) if req else call()
        for item in resp.get(result_key, []) or []:
            if isinstance(item, dict):
                yield item

        next_token = None
        for key in response_token_keys:
            token = resp.get(key)
            if token:
                next_token = str(token)
                break
        if not next_token:
            break


def _operation_name(method: str) -> str:
    # describe_instances -> DescribeInstances
    return "".join(part.capitalize() for part in method.split("_"))


async def call(client: Any, method: str, **kwargs: Any) -> Dict[str, Any]:
    """Run one SDK call on a worker thread."""

    fn = getattr(client, method)
    try:
        return await asyncio.to_thread(fn, **kwargs)
    except _SDK_ERRORS as exc:
        raise AdapterError(_operation_name(method), exc) from exc


async def collect(
    client: Any,
    method: str,
    result_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    request_token_key: str = "NextToken",
    response_token_keys: Sequence[str] = ("NextToken",),
    use_paginator: bool = True,
) -> List[Dict[str, Any]]:
    """Exhaust a paginated listing on a worker thread."""

    def _run() -> List[Dict[str, Any]]:
        return list(
            paginate_items(
                client,
                method,
                result_key,
                params=params,
                request_token_key=request_token_key,
                response_token_keys=response_token_keys,
                use_paginator=use_paginator,
            )
        )

    try:
        return await asyncio.to_thread(_run)
    except _SDK_ERRORS as exc:
        raise AdapterError(_operation_name(method), exc) from exc
