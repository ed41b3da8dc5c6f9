"""Crontab log viewer: the ``root`` and ``user`` files named in the settings."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from contracts.errors import BadRequest
from infra.config import ConsoleConfig

CRONTAB_TYPES = ("user", "root")


def crontab_path(console: ConsoleConfig, crontab_type: str) -> Optional[str]:
    if crontab_type == "root":
        return console.root_crontab
    if crontab_type == "user":
        return console.user_crontab
    raise BadRequest(f"unknown crontab type {crontab_type!r}")


async def read_crontab_log(console: ConsoleConfig, crontab_type: str) -> str:
    """File contents; empty when unset or missing."""
    path = crontab_path(console, crontab_type)
    if not path or not Path(path).is_file():
        return ""
    return await asyncio.to_thread(Path(path).read_text, encoding="utf-8", errors="replace")


__all__ = ["CRONTAB_TYPES", "crontab_path", "read_crontab_log"]
