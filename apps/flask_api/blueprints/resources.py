"""Resource listing and read-only instance views.

Listings carry an ``actions`` list per row (see ``apps.flask_api.views``).
"""

from typing import Any

from flask import Blueprint

from apps.flask_api import runtime
from apps.flask_api.utils import _ok, _params, _parse_csv_list, _q, _require_text
from apps.flask_api.views import listing_view, row_view
from contracts.resource_kind import ResourceKind

resources_bp = Blueprint("resources", __name__)


@resources_bp.route("/aws/index.html", methods=["GET"])
def aws_index() -> Any:
    """Dashboard index: the instance listing."""
    svc = runtime.get_services()
    listing = runtime.run(svc.orchestrator.list([ResourceKind.INSTANCES]))
    return _ok({"region": svc.aws.region, "resources": listing_view(listing)})


@resources_bp.route("/aws/list", methods=["GET"])
def aws_list() -> Any:
    """List one or more resource kinds.

    Query params:
        resource: kind wire value, comma separated for several (default instances)
    """
    kinds = [ResourceKind.parse(k) for k in (_parse_csv_list(_q("resource")) or ["instances"])]
    svc = runtime.get_services()
    listing = runtime.run(svc.orchestrator.list(kinds))
    return _ok({"resources": listing_view(listing)})


@resources_bp.route("/aws/instances", methods=["GET"])
def aws_instances() -> Any:
    """Instances whose id or Name tag contains ``inst`` (all when empty)."""
    needle = (_q("inst") or "").strip()
    svc = runtime.get_services()
    instances = runtime.run(svc.orchestrator.fill_instance_list())
    if needle:
        instances = tuple(i for i in instances if needle in i.id or needle in (i.name or ""))
    return _ok({"items": [row_view(ResourceKind.INSTANCES, i) for i in instances]})


@resources_bp.route("/aws/prices", methods=["GET"])
def aws_prices() -> Any:
    """Catalog prices with live spot prices; ``search`` is comma separated."""
    svc = runtime.get_services()
    prices = runtime.run(svc.orchestrator.get_ec2_prices(_q("search")))
    return _ok({"items": prices})


@resources_bp.route("/aws/instance_status", methods=["GET"])
def aws_instance_status() -> Any:
    instance = _require_text(_params(), "instance")
    svc = runtime.get_services()
    lines = runtime.run(svc.orchestrator.get_status(instance))
    return _ok({"instance": instance, "lines": lines})


@resources_bp.route("/aws/command", methods=["POST"])
def aws_command() -> Any:
    """Run a shell command on a running instance over SSH."""
    payload = _params()
    instance = _require_text(payload, "instance")
    command = _require_text(payload, "command")
    svc = runtime.get_services()
    lines = runtime.run(svc.orchestrator.command(instance, command))
    return _ok({"instance": instance, "lines": lines})


@resources_bp.route("/aws/connect", methods=["GET"])
def aws_connect() -> Any:
    instance = _require_text(_params(), "instance")
    svc = runtime.get_services()
    command = runtime.run(svc.orchestrator.connect(instance))
    return _ok({"instance": instance, "command": command})


@resources_bp.route("/aws/update", methods=["POST"])
def aws_update() -> Any:
    """Scrape the instance catalog and refresh prices."""
    svc = runtime.get_services()
    return _ok(runtime.run(svc.orchestrator.update()))
