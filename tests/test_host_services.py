"""Tests for the host-side helpers: systemd, processes, noVNC, crontab, public ip, spot prices."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

import services.process_sampler as process_sampler
from contracts.catalog import PRICE_SPOT
from contracts.errors import BadRequest, ConfigError, ParseError
from infra.config import ConsoleConfig
from services.crontab import read_crontab_log
from services.novnc import NoVncLauncher, websockify_pids
from services.public_ip import get_public_ip
from services.spot_sampler import SpotSampler
from services.subprocess_runner import CommandResult
from services.systemd import (
    NOT_RUNNING,
    RUNNING,
    SystemdSupervisor,
    journal_timestamp,
    parse_journal,
    parse_list_units,
    parse_show,
)
from tests.aws_mocks import FakeAwsClient, make_adapters
from tests.factories import FakeCatalogStore


class _Recorder:
    """Runner double: records argv and answers from a prefix table."""

    def __init__(self, outputs: dict[str, str] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.outputs = outputs or {}

    async def __call__(self, argv: Sequence[str]) -> CommandResult:
        self.calls.append(list(argv))
        stdout = next((out for prefix, out in self.outputs.items() if " ".join(argv).startswith(prefix)), "")
        return CommandResult(argv=tuple(argv), returncode=0, stdout=stdout, stderr="")


# ---------------------------------------------------------------------------
# systemd
# ---------------------------------------------------------------------------

LIST_UNITS = """\
  UNIT                 LOAD   ACTIVE SUB     DESCRIPTION
  nginx.service        loaded active running A high performance web server
● worker.service       loaded failed failed  Background worker
  cron.service         loaded active running Regular background program processing daemon
"""


def test_list_units_reports_only_managed_services() -> None:
    status = parse_list_units(LIST_UNITS, ["nginx", "worker", "aws-app-http"])
    assert status == {"aws-app-http": NOT_RUNNING, "nginx": RUNNING, "worker": RUNNING}


def test_parse_show_reads_key_values() -> None:
    status = parse_show("ActiveState=active\nSubState=running\nMainPID=42\nMemoryCurrent=[not set]\n")
    assert (status.active_state, status.sub_state, status.main_pid) == ("active", "running", 42)
    assert status.memory is None


def test_journal_entries_decode_timestamps_and_byte_messages() -> None:
    lines = [
        json.dumps({"__REALTIME_TIMESTAMP": "1700000000123456", "MESSAGE": "started", "_HOSTNAME": "box"}),
        "",
        json.dumps({"__REALTIME_TIMESTAMP": "1700000001000000", "MESSAGE": [104, 105], "_HOSTNAME": "box"}),
    ]
    entries = parse_journal("\n".join(lines))
    assert [e.message for e in entries] == ["started", "hi"]
    assert entries[0].timestamp == datetime(2023, 11, 14, 22, 13, 20, 123456, tzinfo=timezone.utc)
    assert journal_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(ParseError):
        parse_journal("not json")


def test_actions_limited_to_managed_services_and_verbs() -> None:
    runner = _Recorder()
    sd = SystemdSupervisor(["worker"], runner=runner)
    assert asyncio.run(sd.service_action("restart", "worker")) == ""
    assert runner.calls == [["sudo", "systemctl", "restart", "worker"]]
    with pytest.raises(BadRequest):
        asyncio.run(sd.service_action("restart", "sshd"))
    with pytest.raises(BadRequest):
        asyncio.run(sd.service_action("mask", "worker"))


def test_restart_all_skips_nginx_and_defers_self() -> None:
    """The console's own unit restarts last, after the call has returned."""
    runner = _Recorder()
    slept: list[float] = []

    async def _sleep(seconds: float) -> None:
        slept.append(seconds)

    sd = SystemdSupervisor(["nginx", "aws-app-http", "worker", "mailer"], runner=runner, sleep=_sleep)

    async def _run() -> tuple[dict[str, str], list[list[str]]]:
        outputs = await sd.restart_all()
        before = [list(c) for c in runner.calls]
        await sd.drain()
        return outputs, before

    outputs, before = asyncio.run(_run())
    assert list(outputs) == ["worker", "mailer"]
    assert before == [["sudo", "systemctl", "restart", "worker"], ["sudo", "systemctl", "restart", "mailer"]]
    assert runner.calls[-1] == ["sudo", "systemctl", "restart", "aws-app-http"]
    assert slept == [1.0]


def test_service_logs_use_current_boot_json() -> None:
    runner = _Recorder({"journalctl": json.dumps({"__REALTIME_TIMESTAMP": "1", "MESSAGE": "x"})})
    entries = asyncio.run(SystemdSupervisor(["worker"], runner=runner).get_service_logs("worker"))
    assert runner.calls[0][:4] == ["journalctl", "-b", "-u", "worker"]
    assert entries[0].message == "x"


# ---------------------------------------------------------------------------
# processes
# ---------------------------------------------------------------------------


def test_process_sampler_matches_truncated_names(monkeypatch) -> None:
    procs = [
        SimpleNamespace(info={"pid": 7, "name": "aws-app-http-se", "cpu_percent": 1.5,
                              "memory_info": SimpleNamespace(rss=2048), "io_counters": None}),
        SimpleNamespace(info={"pid": 3, "name": "postgres", "cpu_percent": None,
                              "memory_info": SimpleNamespace(rss=10),
                              "io_counters": SimpleNamespace(read_bytes=5, write_bytes=6)}),
        SimpleNamespace(info={"pid": 9, "name": "bash", "cpu_percent": 0.0, "memory_info": None, "io_counters": None}),
    ]
    monkeypatch.setattr(process_sampler.psutil, "process_iter", lambda attrs=None, ad_value=None: iter(procs))

    sampler = process_sampler.ProcessSampler(["aws-app-http-server", "postgres"])
    infos = sampler.get_process_info()
    assert [(p.name, p.pid) for p in infos] == [("aws-app-http-se", 7), ("postgres", 3)]
    assert infos[0].memory == 2048 and infos[0].read_disk_bytes == 0
    assert infos[1].cpu_usage == 0.0 and infos[1].write_disk_bytes == 6
    assert [p.pid for p in sampler.get_process_info_by_name("bash")] == [9]


def test_process_sampler_matches_full_long_names(monkeypatch) -> None:
    procs = [
        SimpleNamespace(info={"pid": 41, "name": "averyverylongprocessname", "cpu_percent": 3.0,
                              "memory_info": SimpleNamespace(rss=512), "io_counters": None}),
        SimpleNamespace(info={"pid": 42, "name": "averyverylongpr", "cpu_percent": 0.5,
                              "memory_info": None, "io_counters": None}),
        SimpleNamespace(info={"pid": 43, "name": "averyvery", "cpu_percent": 0.0,
                              "memory_info": None, "io_counters": None}),
    ]
    monkeypatch.setattr(process_sampler.psutil, "process_iter", lambda attrs=None, ad_value=None: iter(procs))

    sampler = process_sampler.ProcessSampler(["averyverylongprocessname"])
    assert [p.pid for p in sampler.get_process_info()] == [42, 41]
    assert [p.pid for p in sampler.get_process_info_by_name("averyverylongprocessname")] == [42, 41]


# ---------------------------------------------------------------------------
# noVNC / crontab
# ---------------------------------------------------------------------------


def _novnc_console(tmp_path: Path, **overrides) -> ConsoleConfig:
    data = {
        "novnc_path": str(tmp_path / "novnc"),
        "novnc_cert_path": str(tmp_path / "cert.pem"),
        "novnc_key_path": str(tmp_path / "key.pem"),
    }
    data.update(overrides)
    return ConsoleConfig(**data)


def test_novnc_disabled_without_all_paths(tmp_path: Path) -> None:
    launcher = NoVncLauncher(_novnc_console(tmp_path, novnc_key_path=None))
    assert launcher.enabled is False
    with pytest.raises(ConfigError):
        launcher.commands()


def test_novnc_commands_and_missing_files(tmp_path: Path) -> None:
    launcher = NoVncLauncher(_novnc_console(tmp_path), home=tmp_path)
    x11vnc, websockify = launcher.commands()
    assert x11vnc[3] == str(tmp_path / ".vnc" / "passwd")
    assert websockify[-1] == "localhost:5900"
    assert "--ssl-only" in websockify
    with pytest.raises(ConfigError, match="missing needed file"):
        asyncio.run(launcher.start())


def test_novnc_stop_kills_children_and_strays(tmp_path: Path) -> None:
    class _Child:
        returncode = None
        killed = False

        def kill(self) -> None:
            self.killed = True
            self.returncode = -9

        async def wait(self) -> int:
            return -9

    child = _Child()
    ps = "UID PID PPID\nroot 4242 1 0 websockify 8787\nroot 10 1 0 sshd\n"
    runner = _Recorder({"ps": ps})
    launcher = NoVncLauncher(_novnc_console(tmp_path), runner=runner)
    launcher._children.append(child)  # pylint: disable=protected-access

    assert asyncio.run(launcher.stop()) == 1
    assert child.killed
    assert runner.calls[-1] == ["sudo", "kill", "-9", "4242"]
    assert websockify_pids(ps) == [4242]
    assert asyncio.run(launcher.status()) == 0


def test_crontab_log_reads_configured_file(tmp_path: Path) -> None:
    log_file = tmp_path / "cron.log"
    log_file.write_text("job ran\n", encoding="utf-8")
    console = ConsoleConfig(user_crontab=str(log_file))
    assert asyncio.run(read_crontab_log(console, "user")) == "job ran\n"
    assert asyncio.run(read_crontab_log(console, "root")) == ""
    with pytest.raises(BadRequest):
        asyncio.run(read_crontab_log(console, "weekly"))


# ---------------------------------------------------------------------------
# public ip / spot prices
# ---------------------------------------------------------------------------


def _ip_client(body: str, status: int = 200) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status, text=body)))


def test_public_ip_trims_and_validates() -> None:
    assert asyncio.run(get_public_ip("https://ip.test/", client=_ip_client("203.0.113.7\n"))) == "203.0.113.7"
    with pytest.raises(ParseError):
        asyncio.run(get_public_ip("https://ip.test/", client=_ip_client("<html>rate limited</html>")))
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(get_public_ip("https://ip.test/", client=_ip_client("", status=503)))


def test_spot_sampler_records_observations() -> None:
    ec2 = FakeAwsClient(
        responses={
            "describe_spot_price_history": {
                "SpotPriceHistory": [
                    {"InstanceType": "m5.large", "SpotPrice": "0.04"},
                    {"InstanceType": "c5.large", "SpotPrice": "0.03"},
                ]
            }
        }
    )
    store = FakeCatalogStore()
    sampler = SpotSampler(make_adapters(ec2=ec2).ec2, store)
    prices = asyncio.run(sampler.record(["m5.large", "c5.large"]))
    assert prices == {"m5.large": 0.04, "c5.large": 0.03}
    assert sorted(store.prices) == [("c5.large", PRICE_SPOT), ("m5.large", PRICE_SPOT)]
    (call,) = ec2.calls_to("describe_spot_price_history")
    assert call["InstanceTypes"] == ["m5.large", "c5.large"]
