"""Child-process helper shared by the SSH runner, systemd supervisor and noVNC.

``run`` waits for exit and captures output. If the awaiting task is
cancelled (or a timeout fires), the child is killed before the
cancellation propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def lines(self) -> list[str]:
        return self.stdout.split("\n")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run(argv: Sequence[str], *, stdin: bytes | None = None) -> CommandResult:
    """Run ``argv`` to completion; output is decoded as UTF-8 with replacement."""
    log.debug("subprocess_exec", argv=" ".join(argv))
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await proc.communicate(stdin)
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    return CommandResult(
        argv=tuple(argv),
        returncode=int(proc.returncode or 0),
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
    )


async def spawn(argv: Sequence[str]) -> asyncio.subprocess.Process:
    """Start a long-running child with its output discarded."""
    log.debug("subprocess_spawn", argv=" ".join(argv))
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )


__all__ = ["CommandResult", "run", "spawn"]
