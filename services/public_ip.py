"""Current public IPv4 of this host, as reported by an echo service."""

from __future__ import annotations

import ipaddress
from typing import Optional

import httpx

from contracts.errors import ParseError

PUBLIC_IP_TIMEOUT_SECONDS = 10.0


async def get_public_ip(url: str, *, client: Optional[httpx.AsyncClient] = None) -> str:
    """GET ``url`` and return the trimmed body; raises ``ParseError`` if it is not an IP."""
    if client is not None:
        resp = await client.get(url)
    else:
        async with httpx.AsyncClient(timeout=PUBLIC_IP_TIMEOUT_SECONDS) as http:
            resp = await http.get(url)
    resp.raise_for_status()
    text = resp.text.strip()
    try:
        ipaddress.ip_address(text)
    except ValueError as exc:
        raise ParseError(f"public ip service returned {text[:64]!r}") from exc
    return text


__all__ = ["get_public_ip"]
