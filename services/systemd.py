"""
Local service supervisor over ``systemctl`` and ``journalctl``.

Only the configured service names are visible or controllable. Control
verbs run under ``sudo``. ``restart_all`` never restarts ``nginx`` and
restarts the console's own unit last, one second after returning, so the
HTTP response that triggered it can still be sent.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from contracts.errors import BadRequest, ParseError
from infra.logging_config import StructuredLogger
from services.subprocess_runner import CommandResult, run

log = StructuredLogger(__name__)

RUNNING = "running"
NOT_RUNNING = "not running"
ACTIONS = frozenset({"start", "stop", "restart"})
RESTART_BLACKLIST = frozenset({"nginx"})
SELF_RESTART_DELAY_SECONDS = 1.0
JOURNAL_LINES = 100

Runner = Callable[[Sequence[str]], Awaitable[CommandResult]]


@dataclass(frozen=True)
class ServiceStatus:
    active_state: str = ""
    sub_state: str = ""
    load_state: str = ""
    main_pid: Optional[int] = None
    tasks: Optional[int] = None
    memory: Optional[int] = None


@dataclass(frozen=True)
class ServiceLogEntry:
    timestamp: datetime
    message: str
    hostname: str
    unit: str = ""


def _opt_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


def parse_list_units(stdout: str, services: Iterable[str]) -> dict[str, str]:
    """``{service: running|not running}`` over ``services``."""
    wanted = set(services)
    status = {name: NOT_RUNNING for name in wanted}
    for line in stdout.split("\n"):
        parts = line.split()
        if not parts:
            continue
        # list-units prefixes failed units with a bullet
        unit = parts[1] if parts[0] in {"●", "*"} and len(parts) > 1 else parts[0]
        name = unit.split(".", 1)[0]
        if name in wanted:
            status[name] = RUNNING
    return dict(sorted(status.items()))


def parse_show(stdout: str) -> ServiceStatus:
    fields: dict[str, str] = {}
    for line in stdout.split("\n"):
        key, sep, val = line.partition("=")
        if sep:
            fields[key] = val
    return ServiceStatus(
        active_state=fields.get("ActiveState", ""),
        sub_state=fields.get("SubState", ""),
        load_state=fields.get("LoadState", ""),
        main_pid=_opt_int(fields.get("MainPID", "")),
        tasks=_opt_int(fields.get("TasksCurrent", "")),
        memory=_opt_int(fields.get("MemoryCurrent", "")),
    )


def journal_timestamp(micros: int) -> datetime:
    """Microseconds since the epoch as an aware UTC datetime."""
    seconds, remainder = divmod(int(micros), 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=remainder)


def _message_text(value: object) -> str:
    # journald emits non-UTF-8 messages as a byte array
    if isinstance(value, list):
        return bytes(int(b) & 0xFF for b in value).decode("utf-8", errors="replace")
    return str(value or "")


def parse_journal(stdout: str) -> list[ServiceLogEntry]:
    entries: list[ServiceLogEntry] = []
    for line in stdout.split("\n"):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
            stamp = int(record["__REALTIME_TIMESTAMP"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"invalid journal line: {line[:120]!r}") from exc
        entries.append(
            ServiceLogEntry(
                timestamp=journal_timestamp(stamp),
                message=_message_text(record.get("MESSAGE")),
                hostname=str(record.get("_HOSTNAME") or ""),
                unit=str(record.get("_SYSTEMD_UNIT") or record.get("UNIT") or ""),
            )
        )
    return entries


class SystemdSupervisor:
    def __init__(
        self,
        services: Iterable[str],
        *,
        own_service: str = "aws-app-http",
        runner: Runner = run,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.services = tuple(dict.fromkeys(services))
        self.own_service = own_service
        self._runner = runner
        self._sleep = sleep
        self._pending: set[asyncio.Task] = set()

    def _check(self, service: str) -> str:
        if service not in self.services:
            raise BadRequest(f"service {service!r} is not managed")
        return service

    async def list_running_services(self) -> dict[str, str]:
        result = await self._runner(["systemctl", "list-units"])
        return parse_list_units(result.stdout, self.services)

    async def get_service_status(self, service: str) -> ServiceStatus:
        result = await self._runner(["systemctl", "show", self._check(service)])
        return parse_show(result.stdout)

    async def get_service_logs(self, service: str) -> list[ServiceLogEntry]:
        """Last ``JOURNAL_LINES`` entries of the current boot, newest first."""
        argv = ["journalctl", "-b", "-u", self._check(service), "-o", "json", "-n", str(JOURNAL_LINES), "-r"]
        result = await self._runner(argv)
        return parse_journal(result.stdout)

    async def service_action(self, action: str, service: str) -> str:
        if action not in ACTIONS:
            raise BadRequest(f"unsupported action {action!r}")
        result = await self._runner(["sudo", "systemctl", action, self._check(service)])
        log.info("systemd_action", action=action, service=service, returncode=result.returncode)
        return result.stdout

    async def _delayed_self_restart(self) -> None:
        await self._sleep(SELF_RESTART_DELAY_SECONDS)
        await self._runner(["sudo", "systemctl", "restart", self.own_service])

    async def restart_all(self) -> dict[str, str]:
        """Restart every managed service except ``nginx``; self last and deferred."""
        outputs: dict[str, str] = {}
        for service in self.services:
            if service in RESTART_BLACKLIST or service == self.own_service:
                continue
            outputs[service] = await self.service_action("restart", service)
        if self.own_service in self.services:
            task = asyncio.ensure_future(self._delayed_self_restart())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            log.info("systemd_self_restart_scheduled", service=self.own_service)
        return outputs

    async def drain(self) -> None:
        """Wait for a scheduled self-restart (CLI use; the HTTP loop outlives it)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


__all__ = [
    "ACTIONS",
    "NOT_RUNNING",
    "RUNNING",
    "ServiceLogEntry",
    "ServiceStatus",
    "SystemdSupervisor",
    "journal_timestamp",
    "parse_journal",
    "parse_list_units",
    "parse_show",
]
