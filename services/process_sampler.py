"""Per-process CPU, memory and disk IO for a fixed set of process names.

The kernel truncates process names to 15 characters while psutil may report
the full name, so both sides are truncated before matching.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import psutil

MAX_PROCESS_NAME = 15


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    cpu_usage: float
    memory: int
    read_disk_bytes: int
    write_disk_bytes: int


def _truncate(name: str) -> str:
    return name[:MAX_PROCESS_NAME]


def _info(attrs: dict) -> ProcessInfo:
    mem = attrs.get("memory_info")
    io = attrs.get("io_counters")
    return ProcessInfo(
        pid=int(attrs["pid"]),
        name=str(attrs.get("name") or ""),
        cpu_usage=float(attrs.get("cpu_percent") or 0.0),
        memory=int(getattr(mem, "rss", 0) or 0),
        read_disk_bytes=int(getattr(io, "read_bytes", 0) or 0),
        write_disk_bytes=int(getattr(io, "write_bytes", 0) or 0),
    )


class ProcessSampler:
    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(sorted({_truncate(n) for n in names if n}))

    def _snapshot(self, wanted: set[str]) -> list[ProcessInfo]:
        attrs = ["pid", "name", "cpu_percent", "memory_info", "io_counters"]
        out: list[ProcessInfo] = []
        for proc in psutil.process_iter(attrs=attrs, ad_value=None):
            if _truncate(str(proc.info.get("name") or "")) in wanted:
                out.append(_info(proc.info))
        return sorted(out, key=lambda p: (p.name, p.pid))

    def get_process_info(self) -> list[ProcessInfo]:
        """Fresh snapshot of every process matching a configured name."""
        return self._snapshot(set(self.names))

    def get_process_info_by_name(self, name: str) -> list[ProcessInfo]:
        return self._snapshot({_truncate(name)})


__all__ = ["MAX_PROCESS_NAME", "ProcessInfo", "ProcessSampler"]
