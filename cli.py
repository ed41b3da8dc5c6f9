"""
AWS operator console CLI (flat-layout friendly).

Usage
-----
awsapp migrate [--dry-run]
awsapp update-catalog
awsapp update-prices
awsapp list -r instances -r volume
awsapp terminate i-0123 my-named-box
awsapp prices --search m5,c5
awsapp spot-prices m5.large c5.xlarge [--record]
awsapp sync-email
awsapp dmarc
awsapp regions
awsapp bucket list | create NAME | delete NAME
awsapp authorized-users list | add EMAIL [--telegram-id N] | remove EMAIL
awsapp systemd list | status NAME | logs NAME | start NAME | stop NAME | restart NAME | restart-all
awsapp public-ip
awsapp serve
awsapp worker [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, List, Optional, TypeVar

from apps.flask_api.views import listing_view, to_jsonable
from contracts.errors import ConsoleError
from contracts.resource_kind import ResourceKind
from infra.config import get_settings
from infra.logging_config import setup_logging

T = TypeVar("T")


def _print(value: Any) -> None:
    print(json.dumps(to_jsonable(value), indent=2, sort_keys=False, default=str))


def _run(job: Callable[[Any], Awaitable[T]]) -> T:
    """Build the service bag, run ``job(services)`` and close the bag."""
    from services.console import build_console_services

    async def _main() -> T:
        services = build_console_services()
        try:
            return await job(services)
        finally:
            await services.aclose()

    return asyncio.run(_main())


def cmd_migrate(args: argparse.Namespace) -> None:
    from apps.backend.db_migrate import run_migrations

    run_migrations(dry_run=bool(args.dry_run))


def cmd_update_catalog(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    from services.catalog_scraper import CatalogScraper

    result = _run(lambda svc: CatalogScraper(svc.store).update())
    for generation, (families, types) in result.items():
        print(f"{generation}: families={families} types={types}")


def cmd_update_prices(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    from services.pricing_scraper import PricingScraper

    written = _run(lambda svc: PricingScraper(svc.store, svc.aws.pricing).update_all_prices())
    print(f"prices written: {written}")


def cmd_list(args: argparse.Namespace) -> None:
    kinds = [ResourceKind.parse(k) for k in (args.resource or ["instances"])]
    listing = _run(lambda svc: svc.orchestrator.list(kinds))
    _print(listing_view(listing))


def cmd_terminate(args: argparse.Namespace) -> None:
    ids = _run(lambda svc: svc.orchestrator.terminate(args.instances))
    print(f"terminated: {' '.join(ids)}")


def cmd_prices(args: argparse.Namespace) -> None:
    prices = _run(lambda svc: svc.orchestrator.get_ec2_prices(args.search))
    for p in prices:
        spot = "" if p.spot_price is None else f"{p.spot_price:.4f}"
        ondemand = "" if p.ondemand_price is None else f"{p.ondemand_price:.4f}"
        print(f"{p.instance_type:<16} {p.ncpu:>4} {p.memory:>8.1f} {ondemand:>10} {spot:>10}")


def cmd_spot_prices(args: argparse.Namespace) -> None:
    if args.record:
        prices = _run(lambda svc: svc.orchestrator.spot.record(args.types))
    else:
        prices = _run(lambda svc: svc.orchestrator.spot.sample(args.types))
    for instance_type, price in sorted(prices.items()):
        print(f"{instance_type:<16} {price:.4f}")


def cmd_sync_email(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    result = _run(lambda svc: svc.inbound_email.sync_db())
    print(f"deleted={result.deleted} inserted={result.inserted} attachments={result.attachments}")


def cmd_dmarc(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    rows = _run(lambda svc: svc.dmarc.ingest())
    print(f"dmarc rows inserted: {rows}")


def cmd_regions(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    _print(_run(lambda svc: svc.orchestrator.list_regions()))


def cmd_bucket(args: argparse.Namespace) -> None:
    if args.action != "list" and not args.name:
        raise SystemExit(f"bucket {args.action} needs a bucket name")

    async def _job(svc: Any) -> Any:
        orch = svc.orchestrator
        if args.action == "list":
            return await orch.list_buckets()
        if args.action == "create":
            return {"bucket": args.name, "location": await orch.create_bucket(args.name)}
        await orch.delete_bucket(args.name)
        return {"bucket": args.name, "deleted": True}

    _print(_run(_job))


def cmd_authorized_users(args: argparse.Namespace) -> None:
    if args.action != "list" and not args.email:
        raise SystemExit(f"authorized-users {args.action} needs an email")

    async def _job(svc: Any) -> Any:
        if args.action == "list":
            return await svc.store.list_authorized_users()
        if args.action == "add":
            return {"email": args.email, "added": await svc.store.add_authorized_user(args.email, args.telegram_id)}
        return {"email": args.email, "removed": await svc.store.remove_authorized_user(args.email)}

    _print(_run(_job))


def cmd_systemd(args: argparse.Namespace) -> None:
    action = args.action
    if action != "list" and action != "restart-all" and not args.service:
        raise SystemExit(f"systemd {action} needs a service name")

    async def _job(svc: Any) -> Any:
        sd = svc.systemd
        if action == "list":
            return await sd.list_running_services()
        if action == "status":
            return await sd.get_service_status(args.service)
        if action == "logs":
            return await sd.get_service_logs(args.service)
        if action == "restart-all":
            outputs = await sd.restart_all()
            await sd.drain()
            return outputs
        return await sd.service_action(action, args.service)

    _print(_run(_job))


def cmd_public_ip(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    from services.public_ip import get_public_ip

    print(asyncio.run(get_public_ip(get_settings().console.public_ip_url)))


def cmd_serve(args: argparse.Namespace) -> None:  # pylint: disable=unused-argument
    from apps.flask_api.flask_app import main as serve_main

    serve_main()


def cmd_worker(args: argparse.Namespace) -> None:
    from apps.worker.catalog_refresh import main as worker_main

    worker_main(["--once"] if args.once else [])


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="awsapp", description="AWS operator console CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("migrate", help="Apply pending SQL migrations.")
    sp.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them.")
    sp.set_defaults(func=cmd_migrate)

    sp = sub.add_parser("update-catalog", help="Scrape instance families and types into the catalog.")
    sp.set_defaults(func=cmd_update_catalog)

    sp = sub.add_parser("update-prices", help="Refresh on-demand and reserved prices from the pricing API.")
    sp.set_defaults(func=cmd_update_prices)

    sp = sub.add_parser("list", help="List resources as JSON.")
    sp.add_argument(
        "-r",
        "--resource",
        action="append",
        default=None,
        help="Resource kind (repeatable): " + ", ".join(k.value for k in ResourceKind),
    )
    sp.set_defaults(func=cmd_list)

    sp = sub.add_parser("terminate", help="Terminate instances by id or Name tag.")
    sp.add_argument("instances", nargs="+")
    sp.set_defaults(func=cmd_terminate)

    sp = sub.add_parser("prices", help="Catalog prices with live spot prices.")
    sp.add_argument("--search", default=None, help="Comma separated instance-type substrings.")
    sp.set_defaults(func=cmd_prices)

    sp = sub.add_parser("spot-prices", help="Latest spot price per instance type.")
    sp.add_argument("types", nargs="*")
    sp.add_argument("--record", action="store_true", help="Also store the prices in the catalog.")
    sp.set_defaults(func=cmd_spot_prices)

    sp = sub.add_parser("sync-email", help="Sync inbound email rows and attachments with the bucket.")
    sp.set_defaults(func=cmd_sync_email)

    sp = sub.add_parser("dmarc", help="Ingest DMARC aggregate reports from attachments.")
    sp.set_defaults(func=cmd_dmarc)

    sp = sub.add_parser("regions", help="List every region with its opt-in status.")
    sp.set_defaults(func=cmd_regions)

    sp = sub.add_parser("bucket", help="List, create or delete S3 buckets.")
    sp.add_argument("action", choices=["list", "create", "delete"])
    sp.add_argument("name", nargs="?", default=None)
    sp.set_defaults(func=cmd_bucket)

    sp = sub.add_parser("authorized-users", help="Manage who may use the console.")
    sp.add_argument("action", choices=["list", "add", "remove"])
    sp.add_argument("email", nargs="?", default=None)
    sp.add_argument("--telegram-id", type=int, default=None)
    sp.set_defaults(func=cmd_authorized_users)

    sp = sub.add_parser("systemd", help="Inspect or control the configured services.")
    sp.add_argument("action", choices=["list", "status", "logs", "start", "stop", "restart", "restart-all"])
    sp.add_argument("service", nargs="?", default=None)
    sp.set_defaults(func=cmd_systemd)

    sp = sub.add_parser("public-ip", help="Print this host's public IP.")
    sp.set_defaults(func=cmd_public_ip)

    sp = sub.add_parser("serve", help="Run the HTTP API.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("worker", help="Run the scheduled catalog and email refresher.")
    sp.add_argument("--once", action="store_true", help="Run one cycle of each job and exit.")
    sp.set_defaults(func=cmd_worker)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()
    try:
        args.func(args)
    except ConsoleError as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
