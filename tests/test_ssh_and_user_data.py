"""Tests for the SSH runner, the subprocess helper and launch scripts."""

from __future__ import annotations

import asyncio
import base64
import shutil
from collections.abc import Sequence
from pathlib import Path

import pytest

from services.ssh import SshRunner
from services.subprocess_runner import CommandResult, run
from services.user_data import DEFAULT_SETUP_SCRIPT, encode_user_data, get_user_data_from_script, list_scripts


def test_ssh_argv_splits_command_on_whitespace() -> None:
    runner = SshRunner("ubuntu")
    assert runner.argv("host.example", "tail  /var/log/x") == ["ssh", "ubuntu@host.example", "--", "tail", "/var/log/x"]
    assert SshRunner("admin", port=2222).argv("h", "ls")[:3] == ["ssh", "-p", "2222"]


def test_ssh_run_command_returns_stdout_lines() -> None:
    seen: list[list[str]] = []

    async def _runner(argv: Sequence[str]) -> CommandResult:
        seen.append(list(argv))
        return CommandResult(argv=tuple(argv), returncode=0, stdout="a\nb", stderr="")

    lines = asyncio.run(SshRunner(runner=_runner).run_command("h", "uptime"))
    assert lines == ["a", "b"]
    assert seen == [["ssh", "ubuntu@h", "--", "uptime"]]


def test_ssh_serialises_commands_per_host() -> None:
    active = {"n": 0, "max": 0}

    async def _runner(argv: Sequence[str]) -> CommandResult:
        active["n"] += 1
        active["max"] = max(active["max"], active["n"])
        await asyncio.sleep(0)
        active["n"] -= 1
        return CommandResult(argv=tuple(argv), returncode=0, stdout="", stderr="")

    async def _main() -> None:
        ssh = SshRunner(runner=_runner)
        await asyncio.gather(*(ssh.run_command("same-host", "ls") for _ in range(5)))

    asyncio.run(_main())
    assert active["max"] == 1


@pytest.mark.skipif(shutil.which("echo") is None, reason="echo not available")
def test_run_captures_output_and_returncode() -> None:
    result = asyncio.run(run(["echo", "hello"]))
    assert result.ok
    assert result.stdout.strip() == "hello"


def test_user_data_prefers_existing_path(tmp_path: Path) -> None:
    script = tmp_path / "boot.sh"
    script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    assert get_user_data_from_script(str(tmp_path / "nowhere"), str(script)) == "#!/bin/sh\necho hi\n"


def test_user_data_falls_back_to_directory_then_default(tmp_path: Path) -> None:
    (tmp_path / "setup_aws.sh").write_text("dir script", encoding="utf-8")
    assert get_user_data_from_script(str(tmp_path), "setup_aws.sh") == "dir script"
    assert get_user_data_from_script(str(tmp_path), "missing.sh") == DEFAULT_SETUP_SCRIPT


def test_encode_user_data_is_base64() -> None:
    assert base64.b64decode(encode_user_data("echo ü")).decode("utf-8") == "echo ü"


def test_list_scripts_sorted_and_missing_dir_empty(tmp_path: Path) -> None:
    (tmp_path / "b.sh").write_text("", encoding="utf-8")
    (tmp_path / "a.sh").write_text("", encoding="utf-8")
    (tmp_path / "sub").mkdir()
    assert list_scripts(str(tmp_path)) == ["a.sh", "b.sh"]
    assert list_scripts(str(tmp_path / "missing")) == []
