"""Remote desktop: ``x11vnc`` on display :0 bridged by ``websockify`` (noVNC).

Disabled unless the noVNC web root, certificate and key are all configured.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from contracts.errors import ConfigError
from infra.config import ConsoleConfig
from infra.logging_config import StructuredLogger
from services.subprocess_runner import CommandResult, run, spawn

log = StructuredLogger(__name__)

X11VNC = "/usr/bin/x11vnc"
WEBSOCKIFY = "/usr/bin/websockify"
WEBSOCKIFY_PORT = "8787"
VNC_TARGET = "localhost:5900"

Runner = Callable[[Sequence[str]], Awaitable[CommandResult]]
Spawner = Callable[[Sequence[str]], Awaitable[asyncio.subprocess.Process]]


def websockify_pids(ps_output: str) -> list[int]:
    """Second column of every ``ps -eF`` line mentioning websockify."""
    pids: list[int] = []
    for line in ps_output.split("\n"):
        if "websockify" not in line:
            continue
        parts = line.split()
        if len(parts) > 1 and parts[1].isdigit():
            pids.append(int(parts[1]))
    return pids


class NoVncLauncher:
    def __init__(
        self,
        console: ConsoleConfig,
        *,
        home: Path | None = None,
        runner: Runner = run,
        spawner: Spawner = spawn,
    ) -> None:
        self._console = console
        self._home = home or Path.home()
        self._runner = runner
        self._spawner = spawner
        self._children: list[asyncio.subprocess.Process] = []
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._console.novnc_enabled

    def commands(self) -> tuple[list[str], list[str]]:
        c = self._console
        if not self.enabled:
            raise ConfigError("noVNC is not configured")
        passwd = str(self._home / ".vnc" / "passwd")
        x11vnc = [X11VNC, "-safer", "-rfbauth", passwd, "-forever", "-display", ":0"]
        websockify = [
            "sudo",
            WEBSOCKIFY,
            WEBSOCKIFY_PORT,
            "--ssl-only",
            "--web",
            str(c.novnc_path),
            "--cert",
            str(c.novnc_cert_path),
            "--key",
            str(c.novnc_key_path),
            VNC_TARGET,
        ]
        return x11vnc, websockify

    async def start(self) -> int:
        x11vnc, websockify = self.commands()
        required = [X11VNC, WEBSOCKIFY, x11vnc[3], websockify[8], websockify[10]]
        missing = [p for p in required if not Path(p).exists()]
        if missing:
            raise ConfigError(f"missing needed file(s): {', '.join(missing)}")
        async with self._lock:
            self._children.append(await self._spawner(x11vnc))
            self._children.append(await self._spawner(websockify))
            count = len(self._children)
        log.info("novnc_started", children=count)
        return count

    async def stop(self) -> int:
        """Kill tracked children and any stray websockify; returns how many children were tracked."""
        async with self._lock:
            children, self._children = self._children, []
        for child in children:
            if child.returncode is None:
                try:
                    child.kill()
                except ProcessLookupError:
                    continue
                await child.wait()
        ps = await self._runner(["ps", "-eF"])
        pids = websockify_pids(ps.stdout)
        if pids:
            await self._runner(["sudo", "kill", "-9", *map(str, pids)])
        log.info("novnc_stopped", children=len(children), stray_pids=len(pids))
        return len(children)

    async def status(self) -> int:
        async with self._lock:
            return len(self._children)


__all__ = ["NoVncLauncher", "websockify_pids"]
