"""Run commands on instances over ``ssh``, one command per host at a time."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

from services.subprocess_runner import CommandResult, run

SSH_TIMEOUT_SECONDS = 60.0

Runner = Callable[[Sequence[str]], Awaitable[CommandResult]]


class SshRunner:
    def __init__(self, user: str = "ubuntu", *, port: int = 22, runner: Runner = run) -> None:
        self.user = user
        self.port = port
        self._runner = runner
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, host: str) -> asyncio.Lock:
        lock = self._locks.get(host)
        if lock is None:
            lock = self._locks[host] = asyncio.Lock()
        return lock

    def argv(self, host: str, command: str) -> list[str]:
        target = f"{self.user}@{host}"
        port_args = [] if self.port == 22 else ["-p", str(self.port)]
        return ["ssh", *port_args, target, "--", *command.split()]

    async def run_command(self, host: str, command: str) -> list[str]:
        """stdout of ``command`` on ``host``, split on newlines."""
        async with self._lock(host):
            result = await self._runner(self.argv(host, command))
        return result.lines()


__all__ = ["SSH_TIMEOUT_SECONDS", "SshRunner"]
