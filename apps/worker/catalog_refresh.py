"""Scheduled refresher: instance catalog + prices, inbound email + DMARC.

Two independent loops share one event loop. A failed cycle is logged and
retried at the next interval; it never stops the other loop.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from infra.config import get_settings
from infra.logging_config import StructuredLogger, clear_request_context, set_request_context, setup_logging
from services.console import ConsoleServices, build_console_services

log = StructuredLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def refresh_catalog(services: ConsoleServices) -> dict[str, Any]:
    """Scrape both catalog generations and refresh prices."""
    return await services.orchestrator.update()


async def refresh_email(services: ConsoleServices) -> dict[str, Any]:
    """Sync inbound email, then ingest new DMARC reports."""
    if not services.console.inbound_email_bucket:
        log.debug("email_refresh_skipped", reason="no inbound_email_bucket")
        return {}
    sync = await services.inbound_email.sync_db()
    rows = await services.dmarc.ingest()
    return {"deleted": sync.deleted, "inserted": sync.inserted, "attachments": sync.attachments, "dmarc_rows": rows}


Job = Callable[[ConsoleServices], Awaitable[dict[str, Any]]]


async def _cycle(name: str, job: Job, services: ConsoleServices) -> bool:
    clear_request_context()
    set_request_context(worker_job=name)
    try:
        result = await job(services)
    except Exception:
        log.exception("worker_cycle_failed", job=name)
        return False
    log.info("worker_cycle_done", job=name, result=result)
    return True


async def _loop(
    name: str,
    job: Job,
    services: ConsoleServices,
    *,
    interval: float,
    cycles: int | None,
    sleep: Sleep,
) -> int:
    done = 0
    while cycles is None or done < cycles:
        await _cycle(name, job, services)
        done += 1
        if cycles is None or done < cycles:
            await sleep(interval)
    return done


async def run_worker(
    services: ConsoleServices,
    *,
    catalog_interval: float,
    email_interval: float,
    cycles: int | None = None,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """Run both loops; ``cycles`` bounds each loop (None runs forever)."""
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(
                _loop("catalog", refresh_catalog, services, interval=catalog_interval, cycles=cycles, sleep=sleep)
            )
            tg.create_task(
                _loop("email", refresh_email, services, interval=email_interval, cycles=cycles, sleep=sleep)
            )
    finally:
        await services.aclose()


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the refresh worker."""
    parser = argparse.ArgumentParser(description="Refresh the instance catalog, prices and inbound email.")
    parser.add_argument("--once", action="store_true", help="Run one cycle of each job and exit.")
    parser.add_argument("--catalog-interval", type=int, default=None, help="Seconds between catalog refreshes.")
    parser.add_argument("--email-interval", type=int, default=None, help="Seconds between email syncs.")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    setup_logging()
    worker_cfg = get_settings().worker
    services = build_console_services()
    asyncio.run(
        run_worker(
            services,
            catalog_interval=float(args.catalog_interval or worker_cfg.refresh_interval_seconds),
            email_interval=float(args.email_interval or worker_cfg.email_sync_interval_seconds),
            cycles=1 if args.once else None,
        )
    )


if __name__ == "__main__":
    main()
