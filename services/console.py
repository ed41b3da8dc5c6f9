"""
services/console.py

Console service bag (DI-friendly).

Goals:
- Build every long-lived core object once per process from ``Settings``:
  the orchestrator (with its instance cache and SSH runner), the catalog
  store, the systemd supervisor, the email/DMARC pipelines, noVNC and the
  process sampler.
- Let the HTTP layer, the worker and the CLI share the same wiring.
- Let tests pass a prebuilt ``AwsAdapters`` and store instead of boto3/psycopg2.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from apps.backend.catalog_store import CatalogStore
from infra.config import ConsoleConfig, Settings, get_settings
from services.aws.clients import AwsAdapters, default_factory
from services.dmarc import DmarcIngestor
from services.inbound_email import InboundEmailSync
from services.novnc import NoVncLauncher
from services.orchestrator import Orchestrator
from services.process_sampler import ProcessSampler
from services.systemd import SystemdSupervisor


@dataclass(frozen=True)
class ConsoleServices:
    """Everything a request handler, worker tick or CLI command needs."""

    console: ConsoleConfig
    aws: AwsAdapters
    store: Any
    orchestrator: Orchestrator
    systemd: SystemdSupervisor
    inbound_email: InboundEmailSync
    dmarc: DmarcIngestor
    novnc: NoVncLauncher
    processes: ProcessSampler

    async def aclose(self) -> None:
        await self.orchestrator.aclose()


def build_console_services(
    settings: Optional[Settings] = None,
    *,
    aws: Optional[AwsAdapters] = None,
    store: Any = None,
) -> ConsoleServices:
    settings = settings or get_settings()
    console = settings.console
    if aws is None:
        aws = default_factory().for_region(settings.aws.region_name)
    if store is None:
        store = CatalogStore()
    systemd = SystemdSupervisor(console.systemd_services, own_service=console.service_name)
    orchestrator = Orchestrator(aws, console=console, store=store, systemd=systemd)
    return ConsoleServices(
        console=console,
        aws=aws,
        store=store,
        orchestrator=orchestrator,
        systemd=systemd,
        inbound_email=InboundEmailSync(aws.s3, store, console.inbound_email_bucket),
        dmarc=DmarcIngestor(aws.s3, store, console.inbound_email_bucket),
        novnc=NoVncLauncher(console),
        processes=ProcessSampler(console.systemd_services),
    )


__all__ = ["ConsoleServices", "build_console_services"]
